"""Scenario eligibility rules and link proposals.

Every scenario is expressed as a pure eligibility function deciding whether
a page may donate or receive links and how many accepted links the lane it
anchors may hold. :func:`propose` turns those decisions into ranked
:class:`ProposedLink` pairs. Scenarios never track accepted counts; the
constraint validator owns all budget state.
"""

from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import EngineConfig, GenerationRules, ScenarioSettings
from .similarity import SimilarityIndex
from .types import PageInfo, ProposedLink


@dataclass(frozen=True)
class CorpusStats:
    """Aggregate link-graph figures used by the automatic thresholds."""

    page_count: int = 0
    mean_in_degree: float = 0.0
    stdev_in_degree: float = 0.0

    @classmethod
    def from_pages(cls, pages: Sequence[PageInfo]) -> "CorpusStats":
        degrees = [page.in_degree for page in pages]
        if not degrees:
            return cls()
        stdev = statistics.pstdev(degrees) if len(degrees) > 1 else 0.0
        return cls(page_count=len(degrees), mean_in_degree=statistics.fmean(degrees), stdev_in_degree=stdev)

    def head_threshold(self, floor: float) -> float:
        return max(float(floor), self.mean_in_degree + self.stdev_in_degree)


@dataclass(frozen=True)
class ScenarioContext:
    stats: CorpusStats
    params: Dict[str, Any]
    rules: GenerationRules
    now: datetime
    top_k: int = 10


@dataclass(frozen=True)
class Eligibility:
    donor: bool = False
    target: bool = False
    budget: Optional[int] = None


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _hub_urls(ctx: ScenarioContext) -> set[str]:
    return set(ctx.rules.hub_pages) | set(ctx.params.get("hubPages") or [])


def _is_money(page: PageInfo, ctx: ScenarioContext) -> bool:
    return any(pattern in page.url for pattern in ctx.rules.money_pages)


def orphan_eligibility(page: PageInfo, ctx: ScenarioContext) -> Eligibility:
    return Eligibility(
        donor=not page.is_orphan,
        target=page.is_orphan,
        budget=int(ctx.params.get("linksPerOrphan", 2)),
    )


def head_eligibility(page: PageInfo, ctx: ScenarioContext) -> Eligibility:
    floor = ctx.params.get("inDegreeFloor", 5)
    is_head = page.is_hub or page.url in _hub_urls(ctx) or page.in_degree > ctx.stats.head_threshold(floor)
    return Eligibility(donor=not is_head, target=is_head, budget=int(ctx.params.get("donorsPerHub", 5)))


def cross_eligibility(page: PageInfo, ctx: ScenarioContext) -> Eligibility:
    return Eligibility(donor=True, target=True, budget=int(ctx.params.get("topN", 3)))


def money_eligibility(page: PageInfo, ctx: ScenarioContext) -> Eligibility:
    if not ctx.rules.money_pages:
        return Eligibility()
    priority = _is_money(page, ctx)
    return Eligibility(donor=not priority, target=priority, budget=int(ctx.params.get("linksPerDonor", 1)))


def depth_eligibility(page: PageInfo, ctx: ScenarioContext) -> Eligibility:
    threshold = int(ctx.params.get("depthThreshold", ctx.rules.depth_threshold))
    shallow = int(ctx.params.get("shallowDepth", 2))
    return Eligibility(
        donor=page.click_depth <= shallow,
        target=page.click_depth >= threshold,
        budget=int(ctx.params.get("donorsPerTarget", 3)),
    )


def fresh_eligibility(page: PageInfo, ctx: ScenarioContext) -> Eligibility:
    if page.published_at is None:
        return Eligibility()
    cutoff = _as_aware(ctx.now) - timedelta(days=int(ctx.params.get("daysFresh", 30)))
    is_fresh = _as_aware(page.published_at) >= cutoff
    return Eligibility(donor=not is_fresh, target=is_fresh, budget=int(ctx.params.get("linksPerDonor", 1)))


ELIGIBILITY: Dict[str, Callable[[PageInfo, ScenarioContext], Eligibility]] = {
    "orphan": orphan_eligibility,
    "head": head_eligibility,
    "cross": cross_eligibility,
    "money": money_eligibility,
    "depth": depth_eligibility,
    "fresh": fresh_eligibility,
}


@dataclass
class _Split:
    donors: List[PageInfo] = field(default_factory=list)
    targets: List[PageInfo] = field(default_factory=list)
    budget: Optional[int] = None


def _split(tag: str, pages: Sequence[PageInfo], ctx: ScenarioContext) -> _Split:
    rule = ELIGIBILITY[tag]
    split = _Split()
    for page in sorted(pages, key=lambda item: item.url):
        verdict = rule(page, ctx)
        if verdict.donor:
            split.donors.append(page)
        if verdict.target:
            split.targets.append(page)
        if split.budget is None:
            split.budget = verdict.budget
    return split


def _threshold(ctx: ScenarioContext, index: SimilarityIndex, key: str = "threshold") -> float:
    value = ctx.params.get(key)
    return index.default_threshold if value is None else float(value)


def _propose_orphan(split: _Split, index: SimilarityIndex, ctx: ScenarioContext) -> List[ProposedLink]:
    donors = sorted(split.donors, key=lambda page: (-page.in_degree, page.url))
    donors = donors[: max(ctx.top_k, split.budget or 0)]
    proposals: List[ProposedLink] = []
    for orphan in split.targets:
        for donor in donors:
            if donor.id == orphan.id:
                continue
            proposals.append(
                ProposedLink(
                    source=donor,
                    target=orphan,
                    scenario="orphan",
                    similarity=index.similarity(donor, orphan),
                    lane=("orphan", orphan.id),
                    quota=split.budget,
                )
            )
    return proposals


def _propose_head(split: _Split, index: SimilarityIndex, ctx: ScenarioContext) -> List[ProposedLink]:
    proposals: List[ProposedLink] = []
    threshold = _threshold(ctx, index)
    for hub in split.targets:
        for hit in index.rank(hub, split.donors, split.budget or 0, threshold):
            proposals.append(
                ProposedLink(
                    source=hit.page,
                    target=hub,
                    scenario="head",
                    similarity=hit.similarity,
                    lane=("head", hub.id),
                )
            )
    return proposals


def _propose_cross(split: _Split, index: SimilarityIndex, ctx: ScenarioContext) -> List[ProposedLink]:
    proposals: List[ProposedLink] = []
    threshold = _threshold(ctx, index)
    for page in split.donors:
        for hit in index.rank(page, split.targets, split.budget or 0, threshold):
            proposals.append(
                ProposedLink(
                    source=page,
                    target=hit.page,
                    scenario="cross",
                    similarity=hit.similarity,
                    lane=("cross", page.id),
                )
            )
    return proposals


def _propose_money(split: _Split, index: SimilarityIndex, ctx: ScenarioContext) -> List[ProposedLink]:
    if not split.targets:
        return []
    proposals: List[ProposedLink] = []
    threshold = _threshold(ctx, index, "minSimilarity")
    for donor in split.donors:
        for hit in index.rank(donor, split.targets, len(split.targets), threshold):
            proposals.append(
                ProposedLink(
                    source=donor,
                    target=hit.page,
                    scenario="money",
                    similarity=hit.similarity,
                    lane=("money", donor.id),
                    quota=split.budget,
                )
            )
    return proposals


def _propose_depth(split: _Split, index: SimilarityIndex, ctx: ScenarioContext) -> List[ProposedLink]:
    proposals: List[ProposedLink] = []
    threshold = _threshold(ctx, index, "minSimilarity")
    for deep in split.targets:
        for hit in index.rank(deep, split.donors, max(ctx.top_k, split.budget or 0), threshold):
            proposals.append(
                ProposedLink(
                    source=hit.page,
                    target=deep,
                    scenario="depth",
                    similarity=hit.similarity,
                    lane=("depth", deep.id),
                    quota=split.budget,
                )
            )
    return proposals


def _propose_fresh(split: _Split, index: SimilarityIndex, ctx: ScenarioContext) -> List[ProposedLink]:
    proposals: List[ProposedLink] = []
    threshold = _threshold(ctx, index, "minSimilarity")
    for donor in split.donors:
        for hit in index.rank(donor, split.targets, max(ctx.top_k, split.budget or 0), threshold):
            proposals.append(
                ProposedLink(
                    source=donor,
                    target=hit.page,
                    scenario="fresh",
                    similarity=hit.similarity,
                    lane=("fresh", donor.id),
                    quota=split.budget,
                )
            )
    return proposals


_PROPOSERS = {
    "orphan": _propose_orphan,
    "head": _propose_head,
    "cross": _propose_cross,
    "money": _propose_money,
    "depth": _propose_depth,
    "fresh": _propose_fresh,
}


def build_context(
    settings: ScenarioSettings,
    pages: Sequence[PageInfo],
    rules: GenerationRules,
    config: EngineConfig,
    now: Optional[datetime] = None,
    stats: Optional[CorpusStats] = None,
) -> ScenarioContext:
    params = config.scenario_defaults(settings.name)
    params.update(settings.params)
    return ScenarioContext(
        stats=stats or CorpusStats.from_pages(pages),
        params=params,
        rules=rules,
        now=now or datetime.now(timezone.utc),
        top_k=int(config.get("top_k", 10)),
    )


def propose(
    settings: ScenarioSettings,
    pages: Sequence[PageInfo],
    index: SimilarityIndex,
    rules: GenerationRules,
    config: EngineConfig,
    now: Optional[datetime] = None,
    stats: Optional[CorpusStats] = None,
) -> List[ProposedLink]:
    """Return the proposed pairs of one enabled scenario, in lane rank order."""

    if not settings.enabled:
        return []
    ctx = build_context(settings, pages, rules, config, now, stats)
    split = _split(settings.tag, pages, ctx)
    if not split.donors or not split.targets:
        return []
    return _PROPOSERS[settings.tag](split, index, ctx)
