"""Forms validating the JSON requests of the linkplanner app.

The generation form wraps the engine's scenario and rule parsers so any
malformed parameter is reported as a form error before a run is created.
"""

from __future__ import annotations

from django import forms

from .engine.config import (
    SCENARIO_TAGS,
    GenerationRules,
    RuleValidationError,
    ScenarioSettings,
    parse_rules,
    parse_scenarios,
)
from .models import Project


class GenerationRequestForm(forms.Form):
    """Validate ``{projectId, scenarios, rules}`` for a new run."""

    projectId = forms.ModelChoiceField(queryset=Project.objects.none())
    scenarios = forms.JSONField()
    rules = forms.JSONField(required=False)

    def __init__(self, *args, user=None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        queryset = Project.objects.all()
        if user is not None:
            queryset = queryset.filter(owner=user)
        self.fields['projectId'].queryset = queryset

    def clean_scenarios(self) -> dict[str, ScenarioSettings]:
        try:
            return parse_scenarios(self.cleaned_data.get('scenarios'))
        except RuleValidationError as exc:
            raise forms.ValidationError(exc.messages) from exc

    def clean_rules(self) -> GenerationRules:
        try:
            return parse_rules(self.cleaned_data.get('rules'))
        except RuleValidationError as exc:
            raise forms.ValidationError(exc.messages) from exc

    @property
    def project_missing(self) -> bool:
        """True when the only problem is an unknown or foreign project."""

        errors = self.errors
        return list(errors) == ['projectId'] and any(
            error.code == 'invalid_choice' for error in errors.as_data()['projectId']
        )


class CandidateQueryForm(forms.Form):
    """Filters and pagination for the candidate listing."""

    STATUS_CHOICES = [('all', 'All'), ('accepted', 'Accepted'), ('rejected', 'Rejected')]

    scenario = forms.ChoiceField(
        required=False,
        choices=[('', 'Any')] + [(tag, tag) for tag in SCENARIO_TAGS.values()],
    )
    status = forms.ChoiceField(required=False, choices=STATUS_CHOICES)
    page = forms.IntegerField(required=False, min_value=1)
    page_size = forms.IntegerField(required=False, min_value=1, max_value=500)

    def clean_status(self) -> str:
        return self.cleaned_data.get('status') or 'all'

    def clean_page(self) -> int:
        return self.cleaned_data.get('page') or 1

    def clean_page_size(self) -> int:
        return self.cleaned_data.get('page_size') or 50
