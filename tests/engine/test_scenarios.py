"""Scenario eligibility and proposal tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from linkplanner.engine.config import GenerationRules, ScenarioSettings
from linkplanner.engine.scenarios import CorpusStats, build_context, head_eligibility, propose
from linkplanner.engine.similarity import SimilarityIndex

from .conftest import make_page

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _index(pages, engine_config, vector=(1.0, 0.0)):
    return SimilarityIndex({page.id: list(vector) for page in pages}, engine_config)


def test_orphan_fix_proposes_strongest_donors_first(engine_config):
    degrees = [0, 10, 8, 3, 1]
    pages = [make_page(idx + 1, f"https://site.test/p{idx}", in_degree=degree) for idx, degree in enumerate(degrees)]

    proposals = propose(
        ScenarioSettings("orphanFix", True),
        pages,
        _index(pages, engine_config),
        GenerationRules(),
        engine_config,
        now=NOW,
    )

    assert [proposal.source.in_degree for proposal in proposals] == [10, 8, 3, 1]
    assert {proposal.target.id for proposal in proposals} == {1}
    assert {proposal.lane for proposal in proposals} == {("orphan", 1)}
    assert all(proposal.quota == 2 for proposal in proposals)


def test_disabled_scenario_proposes_nothing(engine_config):
    pages = [make_page(1, "https://site.test/a", in_degree=0), make_page(2, "https://site.test/b", in_degree=5)]
    assert propose(ScenarioSettings("orphanFix", False), pages, _index(pages, engine_config), GenerationRules(), engine_config) == []


def test_orphan_fix_without_orphans_proposes_nothing(engine_config):
    pages = [make_page(1, "https://site.test/a", in_degree=2), make_page(2, "https://site.test/b", in_degree=5)]
    assert propose(ScenarioSettings("orphanFix", True), pages, _index(pages, engine_config), GenerationRules(), engine_config) == []


def test_head_threshold_uses_mean_plus_stdev(engine_config):
    pages = [make_page(idx, f"https://site.test/{idx}", in_degree=degree) for idx, degree in enumerate([2, 2, 2, 2, 40])]
    stats = CorpusStats.from_pages(pages)
    ctx = build_context(ScenarioSettings("headConsolidation", True), pages, GenerationRules(), engine_config, NOW, stats)

    assert stats.head_threshold(5) > 5
    assert head_eligibility(pages[4], ctx).target
    assert not head_eligibility(pages[0], ctx).target
    assert head_eligibility(pages[0], ctx).donor


def test_head_consolidation_links_donors_to_hub(engine_config):
    hub = make_page(1, "https://site.test/guides", is_hub=True, in_degree=3)
    donors = [make_page(idx, f"https://site.test/post-{idx}", in_degree=1) for idx in range(2, 6)]
    pages = [hub] + donors

    proposals = propose(
        ScenarioSettings("headConsolidation", True, {"donorsPerHub": 2}),
        pages,
        _index(pages, engine_config),
        GenerationRules(),
        engine_config,
        now=NOW,
    )

    assert len(proposals) == 2
    assert all(proposal.target.id == hub.id for proposal in proposals)
    assert all(proposal.quota is None for proposal in proposals)


def test_cluster_cross_link_respects_top_n_and_threshold(engine_config):
    pages = [make_page(idx, f"https://site.test/{idx}") for idx in range(1, 5)]
    vectors = {1: [1.0, 0.0], 2: [1.0, 0.0], 3: [1.0, 0.0], 4: [0.0, 1.0]}
    index = SimilarityIndex(vectors, engine_config)

    proposals = propose(ScenarioSettings("clusterCrossLink", True, {"topN": 1}), pages, index, GenerationRules(), engine_config)

    by_source = {}
    for proposal in proposals:
        by_source.setdefault(proposal.source.id, []).append(proposal.target.id)
    assert by_source == {1: [2], 2: [1], 3: [1]}


def test_commercial_routing_requires_money_pages(engine_config):
    pages = [make_page(1, "https://site.test/pricing"), make_page(2, "https://site.test/blog/post")]
    index = _index(pages, engine_config)
    settings = ScenarioSettings("commercialRouting", True)

    assert propose(settings, pages, index, GenerationRules(), engine_config) == []

    proposals = propose(settings, pages, index, GenerationRules(money_pages=("/pricing",)), engine_config)
    assert [(proposal.source.id, proposal.target.id) for proposal in proposals] == [(2, 1)]
    assert proposals[0].lane == ("money", 2)
    assert proposals[0].quota == 1


def test_depth_lift_links_shallow_pages_to_deep_ones(engine_config):
    pages = [
        make_page(1, "https://site.test/a", click_depth=1),
        make_page(2, "https://site.test/b", click_depth=2),
        make_page(3, "https://site.test/c", click_depth=3),
        make_page(4, "https://site.test/d", click_depth=5),
    ]

    proposals = propose(ScenarioSettings("depthLift", True), pages, _index(pages, engine_config), GenerationRules(depth_threshold=4), engine_config)

    assert {(proposal.source.id, proposal.target.id) for proposal in proposals} == {(1, 4), (2, 4)}
    assert all(proposal.lane == ("depth", 4) and proposal.quota == 3 for proposal in proposals)


def test_depth_threshold_param_overrides_rule(engine_config):
    pages = [make_page(1, "https://site.test/a", click_depth=1), make_page(2, "https://site.test/b", click_depth=3)]
    settings = ScenarioSettings("depthLift", True, {"depthThreshold": 3})

    proposals = propose(settings, pages, _index(pages, engine_config), GenerationRules(depth_threshold=6), engine_config)

    assert [(proposal.source.id, proposal.target.id) for proposal in proposals] == [(1, 2)]


def test_freshness_push_ignores_undated_pages(engine_config):
    pages = [
        make_page(1, "https://site.test/new", published_at=NOW - timedelta(days=3)),
        make_page(2, "https://site.test/old", published_at=NOW - timedelta(days=300)),
        make_page(3, "https://site.test/undated"),
    ]

    proposals = propose(ScenarioSettings("freshnessPush", True), pages, _index(pages, engine_config), GenerationRules(), engine_config, now=NOW)

    assert [(proposal.source.id, proposal.target.id) for proposal in proposals] == [(2, 1)]
    assert proposals[0].lane == ("fresh", 2)


def test_freshness_accepts_naive_dates(engine_config):
    pages = [
        make_page(1, "https://site.test/new", published_at=datetime(2024, 5, 30)),
        make_page(2, "https://site.test/old", published_at=datetime(2023, 1, 1)),
    ]

    proposals = propose(ScenarioSettings("freshnessPush", True), pages, _index(pages, engine_config), GenerationRules(), engine_config, now=NOW)

    assert [(proposal.source.id, proposal.target.id) for proposal in proposals] == [(2, 1)]
