"""Configuration helpers for the link planning engine.

Two kinds of configuration live here: the engine tuning knobs, loaded from
an optional YAML file and merged over :data:`DEFAULTS`, and the per-run
scenario/rule request which is parsed and validated into typed objects
before a run is created.
"""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

import yaml


@dataclass(frozen=True)
class EngineConfig:
    """Typed wrapper around the engine configuration dictionary."""

    raw: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.raw.get(key, default)

    def section(self, key: str) -> Dict[str, Any]:
        value = self.raw.get(key, {})
        return value if isinstance(value, dict) else {}

    def scenario_defaults(self, name: str) -> Dict[str, Any]:
        return dict(self.section("scenario_defaults").get(name, {}))


DEFAULTS: Dict[str, Any] = {
    "similarity_threshold": 0.72,
    "top_k": 10,
    "structural_bonus": {
        "shared_prefix": 0.02,
        "shared_language": 0.02,
        "hub_target": 0.02,
        "max": 0.06,
    },
    "score_weights": {
        "similarity": 1.0,
        "structural": 1.0,
    },
    "memory_cache_size": 20000,
    "embedding_dim": 384,
    "batch": {
        "initial_size": 32,
        "min_size": 8,
        "max_size": 128,
        "slow_seconds": 2.0,
        "fast_seconds": 0.5,
        "grow_factor": 1.5,
        "timeout_seconds": 30.0,
    },
    "anchor": {
        "timeout_seconds": 10.0,
        "min_words": 2,
        "max_words": 8,
        "max_chars": 50,
        "context_chars": 500,
    },
    "cannibalization_levels": {
        "low": 0.3,
        "medium": 0.5,
        "high": 0.7,
    },
    "scenario_defaults": {
        "orphanFix": {"linksPerOrphan": 2},
        "headConsolidation": {"hubPages": [], "inDegreeFloor": 5, "donorsPerHub": 5},
        "clusterCrossLink": {"topN": 3},
        "commercialRouting": {"linksPerDonor": 1, "minSimilarity": 0.0},
        "depthLift": {"shallowDepth": 2, "donorsPerTarget": 3, "minSimilarity": 0.0},
        "freshnessPush": {"daysFresh": 30, "linksPerDonor": 1, "minSimilarity": 0.0},
    },
    "lane_workers": 4,
    "progress_interval_seconds": 0.5,
    "probe_timeout_seconds": 5.0,
}


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load configuration from YAML, merging with defaults."""

    data: Dict[str, Any] = copy.deepcopy(DEFAULTS)

    if path is not None and Path(path).exists():
        with Path(path).open("r", encoding="utf-8") as stream:
            user = yaml.safe_load(stream) or {}
        merge_into(data, user)

    return EngineConfig(data)


def merge_into(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """Recursively merge override into base dict."""

    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merge_into(base[key], value)
        else:
            base[key] = value


# ---------------------------------------------------------------------------
# Run request parsing
# ---------------------------------------------------------------------------

SCENARIO_TAGS: Dict[str, str] = {
    "orphanFix": "orphan",
    "headConsolidation": "head",
    "clusterCrossLink": "cross",
    "commercialRouting": "money",
    "depthLift": "depth",
    "freshnessPush": "fresh",
}

_INT_PARAMS = {
    "linksPerOrphan",
    "inDegreeFloor",
    "donorsPerHub",
    "topN",
    "linksPerDonor",
    "depthThreshold",
    "shallowDepth",
    "donorsPerTarget",
    "daysFresh",
}
_FLOAT_PARAMS = {"minSimilarity", "threshold"}
_LIST_PARAMS = {"hubPages"}

SCENARIO_PARAMS: Dict[str, set[str]] = {
    "orphanFix": {"linksPerOrphan"},
    "headConsolidation": {"hubPages", "inDegreeFloor", "donorsPerHub", "threshold"},
    "clusterCrossLink": {"topN", "threshold"},
    "commercialRouting": {"linksPerDonor", "minSimilarity"},
    "depthLift": {"depthThreshold", "shallowDepth", "donorsPerTarget", "minSimilarity"},
    "freshnessPush": {"daysFresh", "linksPerDonor", "minSimilarity"},
}

BROKEN_LINK_POLICIES = ("delete", "replace", "ignore")
CANNIBALIZATION_LEVELS = ("low", "medium", "high")
MAX_LINKS_RANGE = (1, 25)
DEPTH_THRESHOLD_RANGE = (2, 10)


class RuleValidationError(ValueError):
    """Raised when scenario or rule parameters are malformed."""

    def __init__(self, messages: List[str]) -> None:
        super().__init__("; ".join(messages))
        self.messages = list(messages)


@dataclass(frozen=True)
class ScenarioSettings:
    """A single scenario toggle with its validated parameters."""

    name: str
    enabled: bool
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def tag(self) -> str:
        return SCENARIO_TAGS[self.name]


@dataclass(frozen=True)
class GenerationRules:
    """Global linking policy applied by the constraint validator."""

    max_links: int = 3
    stop_anchors: Tuple[str, ...] = ()
    money_pages: Tuple[str, ...] = ()
    hub_pages: Tuple[str, ...] = ()
    dedupe_links: bool = True
    cannibalization_enabled: bool = False
    cannibalization_level: str = "medium"
    broken_links_policy: str = "ignore"
    depth_threshold: int = 4
    css_class: str = ""
    rel_attribute: str = ""
    target_attribute: str = ""

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("stop_anchors", "money_pages", "hub_pages"):
            data[key] = list(data[key])
        return data


def parse_scenarios(raw: Any) -> Dict[str, ScenarioSettings]:
    """Validate the ``scenarios`` object of a generation request.

    Each value is either a boolean or a mapping with an ``enabled`` flag and
    scenario-specific parameters. The result always contains every known
    scenario, in execution order, with disabled ones marked as such.
    """

    if not isinstance(raw, Mapping):
        raise RuleValidationError(["scenarios must be an object."])

    errors: List[str] = []
    parsed: Dict[str, ScenarioSettings] = {}

    unknown = sorted(set(raw) - set(SCENARIO_TAGS))
    for name in unknown:
        errors.append(f"Unknown scenario '{name}'.")

    for name in SCENARIO_TAGS:
        value = raw.get(name, False)
        if isinstance(value, bool):
            parsed[name] = ScenarioSettings(name=name, enabled=value)
            continue
        if not isinstance(value, Mapping):
            errors.append(f"Scenario '{name}' must be a boolean or an object.")
            continue
        enabled = value.get("enabled", True)
        if not isinstance(enabled, bool):
            errors.append(f"Scenario '{name}': enabled must be a boolean.")
            continue
        params = {key: val for key, val in value.items() if key != "enabled"}
        errors.extend(_validate_params(name, params))
        parsed[name] = ScenarioSettings(name=name, enabled=enabled, params=params)

    if not errors and not any(settings.enabled for settings in parsed.values()):
        errors.append("At least one scenario must be enabled.")

    if errors:
        raise RuleValidationError(errors)
    return parsed


def _validate_params(name: str, params: Mapping[str, Any]) -> List[str]:
    errors: List[str] = []
    allowed = SCENARIO_PARAMS[name]
    for key, value in params.items():
        if key not in allowed:
            errors.append(f"Scenario '{name}': unknown parameter '{key}'.")
        elif key in _INT_PARAMS:
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                errors.append(f"Scenario '{name}': {key} must be a non-negative integer.")
        elif key in _FLOAT_PARAMS:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not -1.0 <= value <= 1.0:
                errors.append(f"Scenario '{name}': {key} must be a number between -1 and 1.")
        elif key in _LIST_PARAMS:
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                errors.append(f"Scenario '{name}': {key} must be a list of strings.")
    return errors


def parse_rules(raw: Any) -> GenerationRules:
    """Validate the ``rules`` object of a generation request."""

    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise RuleValidationError(["rules must be an object."])

    errors: List[str] = []
    defaults = GenerationRules()

    max_links = raw.get("maxLinks", defaults.max_links)
    low, high = MAX_LINKS_RANGE
    if isinstance(max_links, bool) or not isinstance(max_links, int) or not low <= max_links <= high:
        errors.append(f"maxLinks must be an integer between {low} and {high}.")

    stop_anchors = _string_list(raw, "stopAnchors", errors)
    money_pages = _string_list(raw, "moneyPages", errors)
    hub_pages = _string_list(raw, "hubPages", errors)

    dedupe = raw.get("dedupeLinks", defaults.dedupe_links)
    if not isinstance(dedupe, bool):
        errors.append("dedupeLinks must be a boolean.")

    cannibalization = raw.get("cannibalization")
    can_enabled = defaults.cannibalization_enabled
    can_level = defaults.cannibalization_level
    if cannibalization is None:
        pass
    elif isinstance(cannibalization, bool):
        can_enabled = cannibalization
    elif isinstance(cannibalization, Mapping):
        can_enabled = cannibalization.get("enabled", True)
        can_level = cannibalization.get("level", can_level)
        if not isinstance(can_enabled, bool):
            errors.append("cannibalization.enabled must be a boolean.")
        if can_level not in CANNIBALIZATION_LEVELS:
            errors.append(f"cannibalization.level must be one of {', '.join(CANNIBALIZATION_LEVELS)}.")
    else:
        errors.append("cannibalization must be an object.")

    policy = raw.get("brokenLinksPolicy", defaults.broken_links_policy)
    if policy not in BROKEN_LINK_POLICIES:
        errors.append(f"brokenLinksPolicy must be one of {', '.join(BROKEN_LINK_POLICIES)}.")

    depth_threshold = raw.get("depthThreshold", defaults.depth_threshold)
    low, high = DEPTH_THRESHOLD_RANGE
    if (
        isinstance(depth_threshold, bool)
        or not isinstance(depth_threshold, int)
        or not low <= depth_threshold <= high
    ):
        errors.append(f"depthThreshold must be an integer between {low} and {high}.")

    attributes = {}
    for key in ("cssClass", "relAttribute", "targetAttribute"):
        value = raw.get(key, "")
        if value is None:
            value = ""
        if not isinstance(value, str):
            errors.append(f"{key} must be a string.")
        attributes[key] = value

    if errors:
        raise RuleValidationError(errors)

    return GenerationRules(
        max_links=max_links,
        stop_anchors=tuple(stop_anchors),
        money_pages=tuple(money_pages),
        hub_pages=tuple(hub_pages),
        dedupe_links=dedupe,
        cannibalization_enabled=can_enabled,
        cannibalization_level=can_level,
        broken_links_policy=policy,
        depth_threshold=depth_threshold,
        css_class=attributes["cssClass"],
        rel_attribute=attributes["relAttribute"],
        target_attribute=attributes["targetAttribute"],
    )


def _string_list(raw: Mapping[str, Any], key: str, errors: List[str]) -> List[str]:
    value = raw.get(key, []) or []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        errors.append(f"{key} must be a list of strings.")
        return []
    return [item.strip() for item in value if item.strip()]
