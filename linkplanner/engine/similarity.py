"""Cosine similarity search with structural proximity bonuses."""

from __future__ import annotations

import math
from typing import Dict, Hashable, Iterable, List, Optional, Sequence

from .config import EngineConfig
from .text import url_section
from .types import PageInfo, SimilarityHit


class VectorLengthMismatch(ValueError):
    """Raised when two vectors of different dimensionality are compared."""


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Return the cosine similarity between two equal-length vectors."""

    if len(vec_a) != len(vec_b):
        raise VectorLengthMismatch(f"Vector length mismatch: {len(vec_a)} != {len(vec_b)}")
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for a, b in zip(vec_a, vec_b):
        dot += a * b
        norm_a += a * a
        norm_b += b * b
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def structural_bonus(
    source: PageInfo,
    target: PageInfo,
    config: EngineConfig,
    priority_urls: Iterable[str] = (),
) -> float:
    """Additive, capped bonus for non-semantic proximity of two pages."""

    weights = config.section("structural_bonus")
    bonus = 0.0
    section = url_section(source.url)
    if section and section == url_section(target.url):
        bonus += float(weights.get("shared_prefix", 0.02))
    if source.language and target.language and source.language.lower() == target.language.lower():
        bonus += float(weights.get("shared_language", 0.02))
    if target.is_hub or any(pattern and pattern in target.url for pattern in priority_urls):
        bonus += float(weights.get("hub_target", 0.02))
    return min(bonus, float(weights.get("max", 0.06)))


def top_k(
    source: PageInfo,
    source_vector: Sequence[float],
    pool: Iterable[PageInfo],
    vectors: Dict[Hashable, Sequence[float]],
    k: int,
    threshold: float,
    config: EngineConfig,
    priority_urls: Iterable[str] = (),
) -> List[SimilarityHit]:
    """Rank ``pool`` against ``source_vector``.

    Only pages whose similarity is at least ``threshold`` are kept. Hits are
    ordered by weighted score, then by target in-degree (descending), then by
    URL so equal scores always come back in the same order.
    """

    if k <= 0:
        return []
    weights = config.section("score_weights")
    w_similarity = float(weights.get("similarity", 1.0))
    w_structural = float(weights.get("structural", 1.0))
    priority = tuple(priority_urls)

    hits: List[SimilarityHit] = []
    for page in pool:
        if page.id == source.id:
            continue
        vector = vectors.get(page.id)
        if vector is None:
            continue
        similarity = min(1.0, cosine_similarity(source_vector, vector))
        if similarity < threshold:
            continue
        bonus = structural_bonus(source, page, config, priority)
        score = w_similarity * similarity + w_structural * bonus
        hits.append(SimilarityHit(page=page, similarity=similarity, structural_bonus=bonus, score=score))

    hits.sort(key=lambda hit: (-hit.score, -hit.page.in_degree, hit.page.url))
    return hits[:k]


class SimilarityIndex:
    """Page vectors of one corpus plus the ranking defaults of a run."""

    def __init__(
        self,
        vectors: Dict[Hashable, Sequence[float]],
        config: EngineConfig,
        priority_urls: Iterable[str] = (),
    ) -> None:
        self.vectors = vectors
        self.config = config
        self.priority_urls = tuple(priority_urls)
        self.default_threshold = float(config.get("similarity_threshold", 0.72))

    def similarity(self, page_a: PageInfo, page_b: PageInfo) -> float:
        vec_a = self.vectors.get(page_a.id)
        vec_b = self.vectors.get(page_b.id)
        if vec_a is None or vec_b is None:
            return 0.0
        return max(0.0, min(1.0, cosine_similarity(vec_a, vec_b)))

    def rank(
        self,
        source: PageInfo,
        pool: Iterable[PageInfo],
        k: int,
        threshold: Optional[float] = None,
    ) -> List[SimilarityHit]:
        vector = self.vectors.get(source.id)
        if vector is None:
            return []
        return top_k(
            source,
            vector,
            pool,
            self.vectors,
            k,
            self.default_threshold if threshold is None else threshold,
            self.config,
            self.priority_urls,
        )
