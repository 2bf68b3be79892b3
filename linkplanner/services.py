"""Service functions bridging the ORM and the link planning engine.

These helpers load an import's pages into engine types, back the embedding
cache with the database, probe target URLs, and shape run and candidate
records for the JSON views. Keeping them here lets views, the orchestrator
and management commands share one implementation.
"""

from __future__ import annotations

import logging
import urllib.error
import urllib.request
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from django.core.paginator import Page as PaginatorPage
from django.core.paginator import Paginator
from django.db.models import QuerySet
from django.utils import timezone

from .engine.types import BlockInfo, PageInfo
from .models import (
    Block,
    BrokenUrl,
    Embedding,
    EmbeddingCacheEntry,
    GenerationRun,
    ImportJob,
    LinkCandidate,
    Page,
    Project,
)
from .progress import ProgressChannel

logger = logging.getLogger(__name__)

BROKEN_STATUS_CODES = (404, 410)


class MissingImportError(Exception):
    """Raised when a project has no completed import to generate from."""


def latest_completed_import(project: Project) -> Optional[ImportJob]:
    return (
        ImportJob.objects.filter(project=project, status=ImportJob.STATUS_COMPLETED)
        .order_by('-created_at', '-id')
        .first()
    )


def require_completed_import(project: Project) -> ImportJob:
    job = latest_completed_import(project)
    if job is None:
        raise MissingImportError(f'Project "{project}" has no completed import.')
    return job


def page_info(page: Page, text: str = '') -> PageInfo:
    return PageInfo(
        id=page.pk,
        url=page.url,
        title=page.title,
        description=page.description,
        text=text,
        language=page.language or None,
        click_depth=page.click_depth,
        in_degree=page.in_degree,
        out_degree=page.out_degree,
        word_count=page.word_count,
        published_at=page.published_at,
        is_hub=page.is_hub,
    )


def load_corpus(job: ImportJob) -> Tuple[List[PageInfo], Dict[int, List[BlockInfo]]]:
    """Return the pages of ``job`` and their blocks in position order.

    A page's text is its blocks joined in order; pages without blocks fall
    back to their title and description.
    """

    blocks_by_page: Dict[int, List[BlockInfo]] = defaultdict(list)
    for block in Block.objects.filter(page__job=job).order_by('page_id', 'position', 'id'):
        blocks_by_page[block.page_id].append(
            BlockInfo(
                id=block.pk,
                page_id=block.page_id,
                block_type=block.block_type,
                text=block.text,
                position=block.position,
            )
        )

    pages: List[PageInfo] = []
    for page in Page.objects.filter(job=job).order_by('url'):
        blocks = blocks_by_page.get(page.pk, [])
        if blocks:
            text = '\n'.join(block.text for block in blocks)
        else:
            text = ' '.join(part for part in (page.title, page.description) if part)
        pages.append(page_info(page, text))
    return pages, dict(blocks_by_page)


class DatabaseEmbeddingCache:
    """Persistent embedding tier stored in ``EmbeddingCacheEntry`` rows."""

    def get_many(self, project_id: Hashable, hashes: Sequence[str]) -> Dict[str, List[float]]:
        if not hashes:
            return {}
        entries = EmbeddingCacheEntry.objects.filter(project_id=project_id, text_hash__in=list(hashes))
        found = {entry.text_hash: entry.vector for entry in entries}
        if found:
            EmbeddingCacheEntry.objects.filter(project_id=project_id, text_hash__in=list(found)).update(
                last_used=timezone.now()
            )
        return found

    def put_many(self, project_id: Hashable, vectors: Dict[str, List[float]]) -> None:
        if not vectors:
            return
        EmbeddingCacheEntry.objects.bulk_create(
            [
                EmbeddingCacheEntry(project_id=project_id, text_hash=text_hash, vector=vector)
                for text_hash, vector in vectors.items()
            ],
            ignore_conflicts=True,
        )


def save_block_embeddings(
    project_id: int,
    blocks: Iterable[BlockInfo],
    vectors: Dict[Hashable, List[float]],
    hashes: Dict[Hashable, str],
) -> int:
    """Persist one ``Embedding`` row per block that does not have one yet."""

    rows = [
        Embedding(project_id=project_id, block_id=block.id, text_hash=hashes[block.id], vector=vectors[block.id])
        for block in blocks
        if block.id in vectors
    ]
    Embedding.objects.bulk_create(rows, ignore_conflicts=True)
    return len(rows)


def prune_embedding_cache(max_age_days: int, now=None) -> int:
    """Delete cache entries not used within ``max_age_days``."""

    cutoff = (now or timezone.now()) - timedelta(days=max_age_days)
    deleted, _ = EmbeddingCacheEntry.objects.filter(last_used__lt=cutoff).delete()
    if deleted:
        logger.info('Pruned %s embedding cache entries unused since %s', deleted, cutoff.isoformat())
    return deleted


def known_broken_urls(project: Project) -> set[str]:
    """URLs recorded unreachable by any earlier run of the project."""

    return set(BrokenUrl.objects.filter(run__project=project).values_list('url', flat=True))


def probe_url(url: str, timeout: float = 5.0) -> Optional[int]:
    """Return the HTTP status of a HEAD request, or ``None`` if unreachable.

    Network failures are not treated as broken links; only a definite
    status code is reported.
    """

    request = urllib.request.Request(url, method='HEAD', headers={'User-Agent': 'linkplanner/1.0'})
    try:
        with urllib.request.urlopen(request, timeout=timeout) as resp:
            return resp.status
    except urllib.error.HTTPError as exc:
        return exc.code
    except Exception as exc:
        logger.warning('Could not check URL %s: %s', url, exc)
        return None


def is_broken_status(status: Optional[int]) -> bool:
    return status in BROKEN_STATUS_CODES


def serialize_candidate(candidate: LinkCandidate) -> Dict[str, Any]:
    return {
        'id': candidate.pk,
        'sourcePageId': candidate.source_page_id,
        'targetPageId': candidate.target_page_id,
        'sourceUrl': candidate.source_url,
        'targetUrl': candidate.target_url,
        'anchorText': candidate.anchor_text,
        'scenario': candidate.scenario,
        'similarity': round(candidate.similarity, 4),
        'position': candidate.position,
        'isRejected': candidate.is_rejected,
        'rejectionReason': candidate.rejection_reason or None,
        'isDraft': candidate.is_draft,
        'cssClass': candidate.css_class,
        'relAttribute': candidate.rel_attribute,
        'targetAttribute': candidate.target_attribute,
    }


def query_candidates(
    run: GenerationRun,
    *,
    scenario: str = '',
    status: str = 'all',
    page: int = 1,
    page_size: int = 50,
) -> PaginatorPage:
    qs: QuerySet[LinkCandidate] = LinkCandidate.objects.filter(run=run).order_by('id')
    if scenario:
        qs = qs.filter(scenario=scenario)
    if status == 'accepted':
        qs = qs.filter(is_rejected=False)
    elif status == 'rejected':
        qs = qs.filter(is_rejected=True)
    return Paginator(qs, page_size).get_page(page)


def run_snapshot(run: GenerationRun, channel: Optional[ProgressChannel] = None) -> Dict[str, Any]:
    """Current progress of ``run`` in the shape the progress events use.

    The in-process channel is preferred while it has fresher numbers than
    the database row; the row is authoritative once the run is terminal.
    """

    phase, percent, generated, rejected = run.phase, run.percent, run.generated, run.rejected
    latest = channel.latest(str(run.run_id)) if channel is not None else None
    if latest is not None and not run.is_terminal and latest.percent >= percent:
        phase, percent, generated, rejected = latest.phase, latest.percent, latest.generated, latest.rejected

    data: Dict[str, Any] = {
        'runId': str(run.run_id),
        'status': run.status,
        'phase': phase,
        'percent': percent,
        'generated': generated,
        'rejected': rejected,
        'finished': run.is_terminal,
    }
    if run.is_terminal:
        data['success'] = run.status == GenerationRun.STATUS_PUBLISHED
        if run.error_message:
            data['message'] = run.error_message
    return data


def serialize_run(run: GenerationRun) -> Dict[str, Any]:
    return {
        'runId': str(run.run_id),
        'status': run.status,
        'phase': run.phase,
        'percent': run.percent,
        'generated': run.generated,
        'rejected': run.rejected,
        'startedAt': run.started_at.isoformat() if run.started_at else None,
        'finishedAt': run.finished_at.isoformat() if run.finished_at else None,
        'errorMessage': run.error_message or None,
    }
