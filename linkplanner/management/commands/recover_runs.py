from django.conf import settings
from django.core.management.base import BaseCommand

from linkplanner.orchestrator import GenerationOrchestrator, InlineExecutor


class Command(BaseCommand):
    help = 'Mark pending or running generation runs that no worker owns as failed.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--stale-seconds',
            type=float,
            default=None,
            help='Only recover runs whose heartbeat is older than this many seconds.',
        )

    def handle(self, *args, **options):
        stale = options['stale_seconds']
        if stale is None:
            stale = getattr(settings, 'LINKPLANNER_STALE_RUN_SECONDS', None)
        orchestrator = GenerationOrchestrator.from_settings(executor=InlineExecutor())
        recovered = orchestrator.recover_orphaned_runs(stale)
        for run_id in recovered:
            self.stdout.write(f'Marked {run_id} as failed')
        self.stdout.write(self.style.SUCCESS(f'Recovered {len(recovered)} orphaned run(s).'))
