"""Typed data structures shared by the link planning engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Hashable, List, Optional, Tuple


@dataclass(frozen=True)
class PageInfo:
    """Read-only view of an imported page as seen by the engine."""

    id: int
    url: str
    title: str = ""
    description: str = ""
    text: str = ""
    language: Optional[str] = None
    click_depth: int = 0
    in_degree: int = 0
    out_degree: int = 0
    word_count: int = 0
    published_at: Optional[datetime] = None
    is_hub: bool = False

    @property
    def is_orphan(self) -> bool:
        return self.in_degree == 0


@dataclass(frozen=True)
class BlockInfo:
    """A segmented text block belonging to a page."""

    id: int
    page_id: int
    block_type: str
    text: str
    position: int


@dataclass(frozen=True)
class SimilarityHit:
    """A ranked target returned by the similarity search."""

    page: PageInfo
    similarity: float
    structural_bonus: float
    score: float


@dataclass(frozen=True)
class ProposedLink:
    """A (source, target) pair proposed by a scenario.

    ``lane`` groups proposals that must be evaluated in order; ``quota``
    caps how many of the lane's proposals may be accepted.
    """

    source: PageInfo
    target: PageInfo
    scenario: str
    similarity: float
    lane: Tuple[Hashable, ...]
    quota: Optional[int] = None


@dataclass(frozen=True)
class Verdict:
    """Outcome of validating a proposed link."""

    proposal: ProposedLink
    accepted: bool
    target: PageInfo
    anchor_text: str = ""
    reason: Optional[str] = None
    position: int = 0


@dataclass
class EmbeddingStats:
    """Counters describing how vectors were obtained."""

    memory_hits: int = 0
    persistent_hits: int = 0
    computed: int = 0
    batches: List[int] = field(default_factory=list)

    @property
    def cache_hits(self) -> int:
        return self.memory_hits + self.persistent_hits
