"""Engine configuration and request parsing tests."""

from __future__ import annotations

import pytest

from linkplanner.engine.config import (
    DEFAULTS,
    GenerationRules,
    RuleValidationError,
    load_config,
    parse_rules,
    parse_scenarios,
)


def test_load_config_merges_yaml_over_defaults(tmp_path):
    path = tmp_path / "engine.yaml"
    path.write_text("similarity_threshold: 0.5\nbatch:\n  initial_size: 16\n", encoding="utf-8")

    config = load_config(path)

    assert config.get("similarity_threshold") == 0.5
    assert config.section("batch")["initial_size"] == 16
    assert config.section("batch")["max_size"] == DEFAULTS["batch"]["max_size"]
    assert DEFAULTS["batch"]["initial_size"] == 32


def test_load_config_missing_file_returns_defaults(tmp_path):
    config = load_config(tmp_path / "absent.yaml")
    assert config.get("top_k") == DEFAULTS["top_k"]
    assert config.scenario_defaults("orphanFix") == {"linksPerOrphan": 2}


def test_parse_scenarios_accepts_booleans_and_objects():
    parsed = parse_scenarios({"orphanFix": True, "clusterCrossLink": {"topN": 5}})

    assert list(parsed) == [
        "orphanFix",
        "headConsolidation",
        "clusterCrossLink",
        "commercialRouting",
        "depthLift",
        "freshnessPush",
    ]
    assert parsed["orphanFix"].enabled
    assert parsed["clusterCrossLink"].enabled
    assert parsed["clusterCrossLink"].params == {"topN": 5}
    assert parsed["clusterCrossLink"].tag == "cross"
    assert not parsed["depthLift"].enabled


def test_parse_scenarios_collects_every_error():
    with pytest.raises(RuleValidationError) as excinfo:
        parse_scenarios({"bogus": True, "orphanFix": {"linksPerOrphan": -1}, "depthLift": "yes"})

    messages = excinfo.value.messages
    assert "Unknown scenario 'bogus'." in messages
    assert any("linksPerOrphan" in message for message in messages)
    assert any("depthLift" in message for message in messages)


def test_parse_scenarios_requires_one_enabled():
    with pytest.raises(RuleValidationError):
        parse_scenarios({"orphanFix": False})


def test_parse_scenarios_rejects_non_object():
    with pytest.raises(RuleValidationError):
        parse_scenarios(["orphanFix"])


def test_parse_rules_defaults():
    rules = parse_rules(None)
    assert rules == GenerationRules()
    assert rules.max_links == 3
    assert rules.broken_links_policy == "ignore"


@pytest.mark.parametrize(
    ("raw", "enabled", "level"),
    [
        ({"maxLinks": 2}, False, "medium"),
        ({"cannibalization": None}, False, "medium"),
        ({"cannibalization": False}, False, "medium"),
        ({"cannibalization": True}, True, "medium"),
        ({"cannibalization": {}}, True, "medium"),
        ({"cannibalization": {"level": "low"}}, True, "low"),
        ({"cannibalization": {"enabled": False, "level": "high"}}, False, "high"),
    ],
)
def test_parse_rules_cannibalization_is_opt_in(raw, enabled, level):
    rules = parse_rules(raw)
    assert rules.cannibalization_enabled is enabled
    assert rules.cannibalization_level == level


def test_parse_rules_reads_camel_case_fields():
    rules = parse_rules(
        {
            "maxLinks": 5,
            "stopAnchors": [" click here ", ""],
            "moneyPages": ["/pricing"],
            "dedupeLinks": False,
            "cannibalization": {"enabled": True, "level": "high"},
            "brokenLinksPolicy": "replace",
            "depthThreshold": 3,
            "cssClass": "auto-link",
            "relAttribute": "nofollow",
        }
    )

    assert rules.max_links == 5
    assert rules.stop_anchors == ("click here",)
    assert rules.money_pages == ("/pricing",)
    assert rules.dedupe_links is False
    assert rules.cannibalization_enabled
    assert rules.cannibalization_level == "high"
    assert rules.broken_links_policy == "replace"
    assert rules.depth_threshold == 3
    assert rules.as_dict()["stop_anchors"] == ["click here"]
    assert rules.as_dict()["css_class"] == "auto-link"


@pytest.mark.parametrize(
    "raw",
    [
        {"maxLinks": 0},
        {"maxLinks": 26},
        {"maxLinks": True},
        {"brokenLinksPolicy": "explode"},
        {"cannibalization": {"level": "extreme"}},
        {"depthThreshold": 1},
        {"stopAnchors": "click here"},
        {"cssClass": 3},
    ],
)
def test_parse_rules_rejects_invalid_values(raw):
    with pytest.raises(RuleValidationError):
        parse_rules(raw)
