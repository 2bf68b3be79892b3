"""Run link generation for a project synchronously from the command line."""

from __future__ import annotations

import json

from django.core.management.base import BaseCommand, CommandError

from linkplanner.engine.config import RuleValidationError, parse_rules, parse_scenarios
from linkplanner.models import GenerationRun, Project
from linkplanner.orchestrator import GenerationOrchestrator, InlineExecutor
from linkplanner.services import MissingImportError


class Command(BaseCommand):
    help = 'Generate internal link candidates for a project and print the run summary.'

    def add_arguments(self, parser):
        parser.add_argument('project_id', type=int)
        parser.add_argument(
            '--scenarios',
            default='{"orphanFix": true, "clusterCrossLink": true}',
            help='JSON object of scenario toggles and parameters.',
        )
        parser.add_argument('--rules', default='{}', help='JSON object of generation rules.')
        parser.add_argument('--no-probe', action='store_true', help='Skip HTTP checks of target URLs.')

    def handle(self, *args, **options):
        try:
            project = Project.objects.get(pk=options['project_id'])
        except Project.DoesNotExist as exc:
            raise CommandError(f"Project {options['project_id']} does not exist.") from exc

        try:
            scenarios = parse_scenarios(json.loads(options['scenarios']))
            rules = parse_rules(json.loads(options['rules']))
        except ValueError as exc:
            messages = exc.messages if isinstance(exc, RuleValidationError) else [str(exc)]
            raise CommandError('Invalid request: ' + ' '.join(messages)) from exc

        overrides = {'executor': InlineExecutor()}
        if options['no_probe']:
            overrides['probe_links'] = False
        orchestrator = GenerationOrchestrator.from_settings(**overrides)
        try:
            run = orchestrator.start(project, scenarios, rules)
        except MissingImportError as exc:
            raise CommandError(str(exc)) from exc

        run.refresh_from_db()
        summary = (
            f'Run {run.run_id}: {run.status} '
            f'(generated={run.generated}, rejected={run.rejected}, percent={run.percent})'
        )
        if run.status == GenerationRun.STATUS_PUBLISHED:
            self.stdout.write(self.style.SUCCESS(summary))
        else:
            self.stdout.write(self.style.ERROR(f'{summary}: {run.error_message}'))
