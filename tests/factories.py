"""Helpers building projects, imports and pages for Django tests."""

from __future__ import annotations

from typing import Iterable, Optional

from django.contrib.auth import get_user_model

from linkplanner.engine.embeddings import HashedEmbeddingProvider, LRUCache
from linkplanner.models import Block, ImportJob, Page, Project
from linkplanner.orchestrator import GenerationOrchestrator, InlineExecutor
from linkplanner.progress import ProgressChannel

TOPIC_TEXT = 'Brewing coffee at home: grind size, water temperature and the related guide topic for beginners.'


def create_user(username: str = 'owner', password: str = 'pass1234'):
    return get_user_model().objects.create_user(username=username, password=password)


def create_project(owner, name: str = 'Coffee Blog', *, with_import: bool = True) -> Project:
    project = Project.objects.create(owner=owner, name=name, domain='coffee.test')
    if with_import:
        ImportJob.objects.create(project=project, status=ImportJob.STATUS_COMPLETED)
    return project


def create_corpus(
    project: Project,
    in_degrees: Iterable[int],
    *,
    text: str = TOPIC_TEXT,
    job: Optional[ImportJob] = None,
    **page_fields,
) -> list[Page]:
    """Create one page with a single block per in-degree value."""

    job = job or project.imports.filter(status=ImportJob.STATUS_COMPLETED).first()
    pages = []
    for idx, in_degree in enumerate(in_degrees):
        page = Page.objects.create(
            job=job,
            url=f'https://coffee.test/post-{idx}',
            title=f'Post {idx}',
            in_degree=in_degree,
            click_depth=1,
            **page_fields,
        )
        Block.objects.create(page=page, text=f'{text} Post number {idx}.', position=0)
        pages.append(page)
    return pages


class StaticResolver:
    """Anchor resolver returning the same valid anchor for every request."""

    def __init__(self, anchor: Optional[str] = 'related guide topic') -> None:
        self.anchor = anchor

    def resolve(self, request):
        return self.anchor


class CountingProvider(HashedEmbeddingProvider):
    """Hashed provider that remembers every text it embedded."""

    def __init__(self, dim: int = 64) -> None:
        super().__init__(dim=dim)
        self.texts: list[str] = []

    def embed(self, texts):
        self.texts.extend(texts)
        return super().embed(texts)

    @property
    def content_texts(self) -> list[str]:
        return [text for text in self.texts if not text.startswith('probe block')]


def make_orchestrator(**overrides) -> GenerationOrchestrator:
    """Synchronous orchestrator isolated from process-wide caches."""

    options = {
        'executor': InlineExecutor(),
        'provider': CountingProvider(),
        'resolver': StaticResolver(),
        'channel': ProgressChannel(),
        'probe_links': False,
        'memory_cache': LRUCache(1000),
    }
    options.update(overrides)
    return GenerationOrchestrator(**options)
