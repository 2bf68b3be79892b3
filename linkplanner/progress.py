"""Per-run publish/subscribe channel for generation progress.

Subscribers receive a queue. On subscription the latest known snapshot is
put on it immediately, so a client that reconnects never waits for the next
event to learn where a run stands. Percent values are clamped so they never
move backwards within a run.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressSnapshot:
    phase: str
    percent: int
    generated: int
    rejected: int

    def as_event(self) -> Dict[str, Any]:
        event = {'type': 'progress'}
        event.update(asdict(self))
        return event


@dataclass(frozen=True)
class Completion:
    success: bool
    message: Optional[str] = None

    def as_event(self) -> Dict[str, Any]:
        event: Dict[str, Any] = {'type': 'completed', 'success': self.success}
        if self.message:
            event['message'] = self.message
        return event


class ProgressChannel:
    """In-process broadcast of run progress keyed by run id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[queue.Queue]] = {}
        self._latest: Dict[str, ProgressSnapshot] = {}
        self._completed: Dict[str, Completion] = {}

    def publish(self, run_id: str, phase: str, percent: int, generated: int, rejected: int) -> ProgressSnapshot:
        with self._lock:
            previous = self._latest.get(run_id)
            if previous is not None:
                percent = max(percent, previous.percent)
            snapshot = ProgressSnapshot(
                phase=phase,
                percent=max(0, min(100, int(percent))),
                generated=generated,
                rejected=rejected,
            )
            self._latest[run_id] = snapshot
            subscribers = list(self._subscribers.get(run_id, ()))
        for subscriber in subscribers:
            subscriber.put(snapshot.as_event())
        return snapshot

    def complete(self, run_id: str, success: bool, message: Optional[str] = None) -> None:
        completion = Completion(success=success, message=message)
        with self._lock:
            self._completed[run_id] = completion
            subscribers = list(self._subscribers.get(run_id, ()))
        for subscriber in subscribers:
            subscriber.put(completion.as_event())

    def subscribe(self, run_id: str) -> queue.Queue:
        subscriber: queue.Queue = queue.Queue()
        with self._lock:
            self._subscribers.setdefault(run_id, []).append(subscriber)
            snapshot = self._latest.get(run_id)
            completion = self._completed.get(run_id)
        if snapshot is not None:
            subscriber.put(snapshot.as_event())
        if completion is not None:
            subscriber.put(completion.as_event())
        logger.debug('Subscriber added to run %s', run_id)
        return subscriber

    def unsubscribe(self, run_id: str, subscriber: queue.Queue) -> None:
        with self._lock:
            subscribers = self._subscribers.get(run_id, [])
            if subscriber in subscribers:
                subscribers.remove(subscriber)
            if not subscribers:
                self._subscribers.pop(run_id, None)
        logger.debug('Subscriber removed from run %s', run_id)

    def subscriber_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(run_id, ()))

    def latest(self, run_id: str) -> Optional[ProgressSnapshot]:
        with self._lock:
            return self._latest.get(run_id)

    def completion(self, run_id: str) -> Optional[Completion]:
        with self._lock:
            return self._completed.get(run_id)


default_channel = ProgressChannel()
