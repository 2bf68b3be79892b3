"""Shared fixtures and helpers for engine tests."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import pytest

from linkplanner.engine.anchors import AnchorRequest
from linkplanner.engine.config import load_config
from linkplanner.engine.embeddings import HashedEmbeddingProvider
from linkplanner.engine.types import PageInfo, ProposedLink


@pytest.fixture()
def engine_config():
    """Provide a fresh copy of the default engine configuration."""

    return load_config(None)


def make_page(
    page_id: int,
    url: str,
    *,
    title: str = "",
    text: str = "",
    description: str = "",
    language: Optional[str] = None,
    click_depth: int = 1,
    in_degree: int = 1,
    published_at: Optional[datetime] = None,
    is_hub: bool = False,
) -> PageInfo:
    return PageInfo(
        id=page_id,
        url=url,
        title=title,
        description=description,
        text=text,
        language=language,
        click_depth=click_depth,
        in_degree=in_degree,
        word_count=len(text.split()),
        published_at=published_at,
        is_hub=is_hub,
    )


def make_proposal(source: PageInfo, target: PageInfo, scenario: str = "cross", similarity: float = 0.8) -> ProposedLink:
    return ProposedLink(
        source=source,
        target=target,
        scenario=scenario,
        similarity=similarity,
        lane=(scenario, source.id),
    )


class CountingProvider:
    """Hashed provider that records every batch it is asked to embed."""

    def __init__(self, dim: int = 64) -> None:
        self.dim = dim
        self._inner = HashedEmbeddingProvider(dim=dim)
        self.batches: List[List[str]] = []
        self._lock = threading.Lock()

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        with self._lock:
            self.batches.append(list(texts))
        return self._inner.embed(texts)

    @property
    def texts(self) -> List[str]:
        return [text for batch in self.batches for text in batch]


class FakeResolver:
    """Anchor resolver returning canned anchors per target title."""

    def __init__(self, default: Optional[str] = "related guide topic", anchors: Optional[Dict[str, Optional[str]]] = None) -> None:
        self.default = default
        self.anchors = anchors or {}
        self.requests: List[AnchorRequest] = []
        self._lock = threading.Lock()

    def resolve(self, request: AnchorRequest) -> Optional[str]:
        with self._lock:
            self.requests.append(request)
        return self.anchors.get(request.target_title, self.default)
