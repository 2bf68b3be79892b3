"""Background orchestration of link generation runs.

A run moves through ``loading``, ``embedding``, one phase per enabled
scenario, ``checking_broken_links`` and ``finalizing``. Each phase advances
the run's percent inside a fixed band. Any exception ends the run as
``failed``; a cancel request is honoured between phases. Runs left
``running`` by a process that no longer exists are detected and failed by
:meth:`GenerationOrchestrator.recover_orphaned_runs`. Every status write is
conditional on the run still being active, so a worker whose run was
recovered elsewhere stops at its next write and leaves that outcome alone.

Lanes sharing a source page are evaluated in order on one thread; only
lanes with disjoint sources run in parallel, which keeps the outcome of a
run independent of thread scheduling.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Callable, Dict, Hashable, List, Optional, Sequence, Set, Tuple

from django.conf import settings
from django.db import connection
from django.utils import timezone
from django.utils.module_loading import import_string

from .engine.anchors import AnchorResolver, ChatAnchorResolver, PhraseAnchorResolver, TimeboxedResolver
from .engine.config import EngineConfig, GenerationRules, ScenarioSettings, load_config
from .engine.embeddings import (
    BatchSizeTuner,
    EmbeddingProvider,
    EmbeddingStore,
    HashedEmbeddingProvider,
    LRUCache,
    centroid,
    shared_memory_cache,
)
from .engine.scenarios import CorpusStats, propose
from .engine.similarity import SimilarityIndex
from .engine.text import text_hash
from .engine.types import BlockInfo, PageInfo, ProposedLink, Verdict
from .engine.validator import BROKEN_URL, ConstraintValidator
from .models import BrokenUrl, GenerationRun, LinkCandidate, Project
from .progress import ProgressChannel, default_channel
from .services import (
    DatabaseEmbeddingCache,
    is_broken_status,
    known_broken_urls,
    load_corpus,
    probe_url,
    require_completed_import,
    save_block_embeddings,
)

logger = logging.getLogger(__name__)

LOADING_BAND = (0, 20)
EMBEDDING_BAND = (20, 70)
SCENARIO_BAND = (70, 90)
BROKEN_LINKS_BAND = (90, 95)
FINALIZING_BAND = (95, 100)

ACTIVE_STATUSES = (GenerationRun.STATUS_PENDING, GenerationRun.STATUS_RUNNING)


class RunCanceled(Exception):
    """Raised between phases when a cancel request is observed."""


class RunLost(Exception):
    """Raised when the run was finished elsewhere, e.g. by orphan recovery."""


class InlineExecutor:
    """Executor running submitted work immediately in the caller's thread."""

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as exc:
            future.set_exception(exc)
        return future

    def shutdown(self, wait: bool = True) -> None:
        return None


class _RunRecorder:
    """Holds a run's counters and writes coalesced progress updates."""

    def __init__(self, run: GenerationRun, channel: ProgressChannel, interval: float) -> None:
        self.run = run
        self.run_id = str(run.run_id)
        self.channel = channel
        self.interval = interval
        self.phase = run.phase
        self.percent = run.percent
        self.generated = 0
        self.rejected = 0
        self._last_flush = 0.0

    def start(self, worker_id: str) -> None:
        updated = GenerationRun.objects.filter(pk=self.run.pk, status=GenerationRun.STATUS_PENDING).update(
            status=GenerationRun.STATUS_RUNNING,
            worker_id=worker_id,
            updated_at=timezone.now(),
        )
        if not updated:
            raise RunLost()
        logger.info('Run %s started on %s', self.run_id, worker_id)

    def progress(self, phase: str, percent: float, *, force: bool = False) -> None:
        percent = max(self.percent, min(100, int(percent)))
        phase_changed = phase != self.phase
        if phase_changed:
            logger.info('Run %s entering phase %s at %s%%', self.run_id, phase, percent)
        self.phase = phase
        self.percent = percent
        now = time.monotonic()
        if force or phase_changed or now - self._last_flush >= self.interval:
            self.flush()
            self._last_flush = now

    def count(self, verdicts: Sequence[Verdict]) -> None:
        for verdict in verdicts:
            if verdict.accepted:
                self.generated += 1
            else:
                self.rejected += 1

    def flush(self) -> None:
        updated = GenerationRun.objects.filter(pk=self.run.pk, status__in=ACTIVE_STATUSES).update(
            phase=self.phase,
            percent=self.percent,
            generated=self.generated,
            rejected=self.rejected,
            updated_at=timezone.now(),
        )
        if not updated:
            raise RunLost()
        self.channel.publish(self.run_id, self.phase, self.percent, self.generated, self.rejected)

    def finish(self, status: str, message: str = '') -> None:
        if status == GenerationRun.STATUS_PUBLISHED:
            self.percent = 100
            self.phase = 'completed'
        now = timezone.now()
        updated = GenerationRun.objects.filter(pk=self.run.pk, status__in=ACTIVE_STATUSES).update(
            status=status,
            phase=self.phase,
            percent=self.percent,
            generated=self.generated,
            rejected=self.rejected,
            error_message=message,
            finished_at=now,
            updated_at=now,
        )
        if not updated:
            logger.warning('Run %s is no longer active; discarding final status %s', self.run_id, status)
            return
        self.channel.publish(self.run_id, self.phase, self.percent, self.generated, self.rejected)
        self.channel.complete(self.run_id, status == GenerationRun.STATUS_PUBLISHED, message or None)
        logger.info(
            'Run %s finished as %s (generated=%s rejected=%s)%s',
            self.run_id,
            status,
            self.generated,
            self.rejected,
            f': {message}' if message else '',
        )


def build_anchor_resolver(config: EngineConfig) -> AnchorResolver:
    """Chat endpoint resolver when configured, phrase matching otherwise."""

    anchor = config.section('anchor')
    api_url = getattr(settings, 'LINKPLANNER_ANCHOR_API_URL', '')
    inner: AnchorResolver
    if api_url:
        inner = ChatAnchorResolver(
            api_url,
            api_key=getattr(settings, 'LINKPLANNER_ANCHOR_API_KEY', ''),
            model=getattr(settings, 'LINKPLANNER_ANCHOR_MODEL', 'gpt-3.5-turbo'),
            timeout=float(anchor.get('timeout_seconds', 10.0)),
            max_words=int(anchor.get('max_words', 8)),
            max_chars=int(anchor.get('max_chars', 50)),
            context_chars=int(anchor.get('context_chars', 500)),
        )
    else:
        inner = PhraseAnchorResolver(
            min_words=int(anchor.get('min_words', 2)),
            max_words=int(anchor.get('max_words', 8)),
            max_chars=int(anchor.get('max_chars', 50)),
        )
    return TimeboxedResolver(inner, timeout=float(anchor.get('timeout_seconds', 10.0)))


def serialize_scenarios(scenarios: Dict[str, ScenarioSettings]) -> Dict[str, Any]:
    return {name: dict(item.params, enabled=item.enabled) for name, item in scenarios.items()}


def group_lanes_by_source(lanes: Sequence[List[ProposedLink]]) -> List[List[List[ProposedLink]]]:
    """Merge lanes that share a source page into ordered groups.

    Validator state is kept per source page, so groups built this way can
    be evaluated concurrently while lanes within a group keep their rank
    order. Groups are returned in the order of their first lane.
    """

    groups: List[Tuple[Set[int], List[int]]] = []
    for position, lane in enumerate(lanes):
        sources = {proposal.source.id for proposal in lane}
        members = [position]
        for group in [group for group in groups if group[0] & sources]:
            groups.remove(group)
            sources |= group[0]
            members.extend(group[1])
        groups.append((sources, sorted(members)))
    groups.sort(key=lambda group: group[1][0])
    return [[lanes[position] for position in members] for _, members in groups]


class GenerationOrchestrator:
    """Start, run, cancel and recover link generation runs."""

    def __init__(
        self,
        *,
        executor: Any = None,
        provider: Optional[EmbeddingProvider] = None,
        resolver: Optional[AnchorResolver] = None,
        link_checker: Callable[[str, float], Optional[int]] = probe_url,
        channel: Optional[ProgressChannel] = None,
        config: Optional[EngineConfig] = None,
        probe_links: bool = True,
        memory_cache: Optional[LRUCache] = None,
    ) -> None:
        self.config = config or load_config(None)
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix='linkplanner-run')
        self.provider = provider or HashedEmbeddingProvider(dim=int(self.config.get('embedding_dim', 384)))
        self.resolver = resolver or build_anchor_resolver(self.config)
        self.link_checker = link_checker
        self.channel = channel or default_channel
        self.probe_links = probe_links
        if memory_cache is None:
            memory_cache = shared_memory_cache(int(self.config.get('memory_cache_size', 20000)))
        self.memory_cache = memory_cache
        self.worker_id = f'{socket.gethostname()[:40]}-{os.getpid()}-{uuid.uuid4().hex[:8]}'
        self._active: set[str] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, **overrides: Any) -> 'GenerationOrchestrator':
        config = load_config(getattr(settings, 'LINKPLANNER_ENGINE_CONFIG', None))
        provider_path = getattr(
            settings,
            'LINKPLANNER_EMBEDDING_PROVIDER',
            'linkplanner.engine.embeddings.HashedEmbeddingProvider',
        )
        options: Dict[str, Any] = {
            'config': config,
            'provider': import_string(provider_path)(dim=int(config.get('embedding_dim', 384))),
            'probe_links': getattr(settings, 'LINKPLANNER_PROBE_BROKEN_LINKS', True),
        }
        options.update(overrides)
        if 'executor' not in options:
            options['executor'] = ThreadPoolExecutor(
                max_workers=getattr(settings, 'LINKPLANNER_MAX_CONCURRENT_RUNS', 2),
                thread_name_prefix='linkplanner-run',
            )
        return cls(**options)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(
        self,
        project: Project,
        scenarios: Dict[str, ScenarioSettings],
        rules: GenerationRules,
    ) -> GenerationRun:
        """Create a run and hand it to the executor.

        Raises ``MissingImportError`` before any run row exists when the
        project has no completed import.
        """

        job = require_completed_import(project)
        run = GenerationRun.objects.create(
            project=project,
            import_job=job,
            status=GenerationRun.STATUS_PENDING,
            phase='queued',
            scenarios=serialize_scenarios(scenarios),
            rules=rules.as_dict(),
            worker_id=self.worker_id,
        )
        run_id = str(run.run_id)
        with self._lock:
            self._active.add(run_id)
        self.channel.publish(run_id, 'queued', 0, 0, 0)
        logger.info('Queued run %s for project %s', run_id, project.pk)

        def report_crash(future: Future) -> None:
            if not future.cancelled() and future.exception() is not None:
                logger.error('Worker for run %s crashed', run_id, exc_info=future.exception())

        self.executor.submit(self._run_in_worker, run.pk, scenarios, rules).add_done_callback(report_crash)
        return run

    def cancel(self, run: GenerationRun) -> bool:
        """Request cancellation; the worker stops at the next phase boundary."""

        updated = GenerationRun.objects.filter(
            pk=run.pk,
            status__in=ACTIVE_STATUSES,
        ).update(cancel_requested=True)
        if updated:
            logger.info('Cancel requested for run %s', run.run_id)
        return bool(updated)

    def is_active(self, run_id: str) -> bool:
        with self._lock:
            return str(run_id) in self._active

    def recover_orphaned_runs(self, stale_after: Optional[float] = None) -> List[str]:
        """Fail ``pending``/``running`` runs that no live worker owns.

        Without ``stale_after`` every such run not owned by this orchestrator
        is orphaned. With it, only runs whose heartbeat is older than that
        many seconds are, which leaves runs of other live processes alone.
        """

        candidates = GenerationRun.objects.filter(
            status__in=ACTIVE_STATUSES
        )
        if stale_after is not None:
            candidates = candidates.filter(updated_at__lt=timezone.now() - timedelta(seconds=stale_after))

        recovered: List[str] = []
        for run in candidates:
            run_id = str(run.run_id)
            if self.is_active(run_id):
                continue
            message = f'Run interrupted: worker {run.worker_id or "unknown"} is no longer running it.'
            now = timezone.now()
            updated = GenerationRun.objects.filter(
                pk=run.pk,
                status__in=ACTIVE_STATUSES,
            ).update(status=GenerationRun.STATUS_FAILED, error_message=message, finished_at=now, updated_at=now)
            if updated:
                self.channel.complete(run_id, False, message)
                recovered.append(run_id)
                logger.warning('Marked orphaned run %s (phase %s) as failed', run_id, run.phase or '-')
        return recovered

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _run_in_worker(
        self,
        run_pk: int,
        scenarios: Dict[str, ScenarioSettings],
        rules: GenerationRules,
    ) -> None:
        run_id = None
        try:
            run = GenerationRun.objects.get(pk=run_pk)
            run_id = str(run.run_id)
            self.execute(run, scenarios, rules)
        finally:
            if run_id is not None:
                with self._lock:
                    self._active.discard(run_id)
            if not isinstance(self.executor, InlineExecutor):
                connection.close()

    def execute(
        self,
        run: GenerationRun,
        scenarios: Dict[str, ScenarioSettings],
        rules: GenerationRules,
    ) -> GenerationRun:
        recorder = _RunRecorder(run, self.channel, float(self.config.get('progress_interval_seconds', 0.5)))
        try:
            recorder.start(self.worker_id)
            recorder.progress('loading', LOADING_BAND[0], force=True)
            pages, blocks = load_corpus(run.import_job)
            recorder.progress('loading', LOADING_BAND[1])
            self._check_cancel(run)

            recorder.progress('embedding', EMBEDDING_BAND[0])
            vectors = self._embed(run, pages, blocks, recorder)
            recorder.progress('embedding', EMBEDDING_BAND[1])
            self._check_cancel(run)

            self._generate(run, pages, vectors, scenarios, rules, recorder)

            recorder.progress('checking_broken_links', BROKEN_LINKS_BAND[0])
            self._check_broken_links(run, rules, recorder)
            self._check_cancel(run)

            recorder.progress('finalizing', FINALIZING_BAND[0])
            LinkCandidate.objects.filter(run=run, is_rejected=False).update(is_draft=True)
            recorder.finish(GenerationRun.STATUS_PUBLISHED)
        except RunLost:
            logger.warning('Run %s was finished elsewhere; worker %s stops', recorder.run_id, self.worker_id)
        except RunCanceled:
            recorder.finish(GenerationRun.STATUS_CANCELED, 'Run canceled by request.')
        except Exception as exc:
            logger.exception('Run %s failed during %s', recorder.run_id, recorder.phase)
            recorder.finish(GenerationRun.STATUS_FAILED, str(exc) or exc.__class__.__name__)
        run.refresh_from_db()
        return run

    def _check_cancel(self, run: GenerationRun) -> None:
        state = GenerationRun.objects.filter(pk=run.pk).values('status', 'cancel_requested').first()
        if state is None or state['status'] not in ACTIVE_STATUSES:
            raise RunLost()
        if state['cancel_requested']:
            raise RunCanceled()

    def _embed(
        self,
        run: GenerationRun,
        pages: Sequence[PageInfo],
        blocks: Dict[int, List[BlockInfo]],
        recorder: _RunRecorder,
    ) -> Dict[Hashable, List[float]]:
        batch = self.config.section('batch')
        store = EmbeddingStore(
            self.provider,
            run.project_id,
            backing=DatabaseEmbeddingCache(),
            memory=self.memory_cache,
            tuner=BatchSizeTuner.from_config(batch),
            batch_timeout=float(batch.get('timeout_seconds', 30.0)),
        )
        store.calibrate()

        items = []
        for page in pages:
            page_blocks = blocks.get(page.id, [])
            if page_blocks:
                items.extend((('block', block.id), block.text) for block in page_blocks)
            else:
                items.append((('page', page.id), page.text))

        low, high = EMBEDDING_BAND

        def report(done: int, total: int) -> None:
            recorder.progress('embedding', low + (high - low) * done / max(total, 1))

        resolved = store.ensure_many(items, progress=report)
        logger.info(
            'Run %s embeddings: %s computed, %s cache hits, batches %s',
            recorder.run_id,
            store.stats.computed,
            store.stats.cache_hits,
            store.stats.batches,
        )

        all_blocks = [block for page_blocks in blocks.values() for block in page_blocks]
        save_block_embeddings(
            run.project_id,
            all_blocks,
            {block.id: resolved[('block', block.id)] for block in all_blocks},
            {block.id: text_hash(block.text) for block in all_blocks},
        )

        page_vectors: Dict[Hashable, List[float]] = {}
        for page in pages:
            page_blocks = blocks.get(page.id, [])
            if page_blocks:
                page_vectors[page.id] = centroid(resolved[('block', block.id)] for block in page_blocks)
            else:
                page_vectors[page.id] = resolved[('page', page.id)]
        return page_vectors

    def _generate(
        self,
        run: GenerationRun,
        pages: Sequence[PageInfo],
        vectors: Dict[Hashable, List[float]],
        scenarios: Dict[str, ScenarioSettings],
        rules: GenerationRules,
        recorder: _RunRecorder,
    ) -> None:
        index = SimilarityIndex(vectors, self.config, priority_urls=rules.money_pages + rules.hub_pages)
        broken = known_broken_urls(run.project)
        validator = ConstraintValidator(
            rules,
            self.resolver,
            levels=self.config.section('cannibalization_levels'),
            known_broken=broken,
            replacement_for=self._replacement_finder(pages, index, broken),
            anchor_limits=self.config.section('anchor'),
        )
        stats = CorpusStats.from_pages(pages)
        now = timezone.now()

        enabled = [item for item in scenarios.values() if item.enabled]
        low, high = SCENARIO_BAND
        band = (high - low) / max(len(enabled), 1)
        for position, scenario in enumerate(enabled):
            start = low + band * position
            phase = f'scenario_{scenario.tag}'
            recorder.progress(phase, start)
            proposals = propose(scenario, pages, index, rules, self.config, now=now, stats=stats)
            self._evaluate(run, phase, proposals, validator, rules, recorder, start, band)
            recorder.progress(phase, start + band)
            self._check_cancel(run)

    def _replacement_finder(
        self,
        pages: Sequence[PageInfo],
        index: SimilarityIndex,
        broken: set[str],
    ) -> Callable[[ProposedLink], Optional[PageInfo]]:
        reachable = [page for page in pages if page.url not in broken]

        def find(proposal: ProposedLink) -> Optional[PageInfo]:
            pool = [page for page in reachable if page.id != proposal.source.id]
            hits = index.rank(proposal.target, pool, 1)
            return hits[0].page if hits else None

        return find

    def _evaluate(
        self,
        run: GenerationRun,
        phase: str,
        proposals: Sequence[ProposedLink],
        validator: ConstraintValidator,
        rules: GenerationRules,
        recorder: _RunRecorder,
        start: float,
        band: float,
    ) -> None:
        lanes: 'OrderedDict[Hashable, List[ProposedLink]]' = OrderedDict()
        for proposal in proposals:
            lanes.setdefault(proposal.lane, []).append(proposal)
        if not lanes:
            return

        def run_lane(lane: List[ProposedLink]) -> List[Verdict]:
            verdicts: List[Verdict] = []
            accepted = 0
            for proposal in lane:
                if proposal.quota is not None and accepted >= proposal.quota:
                    break
                verdict = validator.validate(proposal)
                verdicts.append(verdict)
                if verdict.accepted:
                    accepted += 1
            return verdicts

        def run_group(group: List[List[ProposedLink]]) -> List[Verdict]:
            return [verdict for lane in group for verdict in run_lane(lane)]

        groups = group_lanes_by_source(list(lanes.values()))
        total = len(groups)
        workers = max(1, int(self.config.get('lane_workers', 4)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='linkplanner-lane') as pool:
            futures = [pool.submit(run_group, group) for group in groups]
            for done, future in enumerate(futures, start=1):
                verdicts = future.result()
                self._persist(run, verdicts, rules)
                recorder.count(verdicts)
                recorder.progress(phase, start + band * done / total)

    def _persist(self, run: GenerationRun, verdicts: Sequence[Verdict], rules: GenerationRules) -> None:
        if not verdicts:
            return
        LinkCandidate.objects.bulk_create(
            [
                LinkCandidate(
                    run=run,
                    source_page_id=verdict.proposal.source.id,
                    target_page_id=verdict.target.id,
                    source_url=verdict.proposal.source.url,
                    target_url=verdict.target.url,
                    anchor_text=verdict.anchor_text[:255],
                    scenario=verdict.proposal.scenario,
                    similarity=verdict.proposal.similarity,
                    position=verdict.position,
                    is_rejected=not verdict.accepted,
                    rejection_reason=verdict.reason or '',
                    css_class=rules.css_class,
                    rel_attribute=rules.rel_attribute,
                    target_attribute=rules.target_attribute,
                )
                for verdict in verdicts
            ]
        )

    def _check_broken_links(self, run: GenerationRun, rules: GenerationRules, recorder: _RunRecorder) -> None:
        if rules.broken_links_policy == 'ignore' or not self.probe_links:
            return
        urls = sorted(
            set(
                LinkCandidate.objects.filter(run=run, is_rejected=False).values_list('target_url', flat=True)
            )
        )
        timeout = float(self.config.get('probe_timeout_seconds', 5.0))
        low, high = BROKEN_LINKS_BAND
        broken: List[str] = []
        for position, url in enumerate(urls, start=1):
            status = self.link_checker(url, timeout)
            if is_broken_status(status):
                BrokenUrl.objects.get_or_create(run=run, url=url, defaults={'status_code': status})
                broken.append(url)
                logger.warning('Run %s: target %s returned %s', recorder.run_id, url, status)
            recorder.progress('checking_broken_links', low + (high - low) * position / len(urls))

        if broken:
            flipped = LinkCandidate.objects.filter(run=run, is_rejected=False, target_url__in=broken).update(
                is_rejected=True,
                rejection_reason=BROKEN_URL,
            )
            recorder.generated -= flipped
            recorder.rejected += flipped
            recorder.progress('checking_broken_links', high, force=True)


_orchestrator: Optional[GenerationOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> GenerationOrchestrator:
    """Process-wide orchestrator; orphaned runs are recovered on creation."""

    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = GenerationOrchestrator.from_settings()
            _orchestrator.recover_orphaned_runs(getattr(settings, 'LINKPLANNER_STALE_RUN_SECONDS', None))
        return _orchestrator
