"""Constraint validation for proposed links.

The validator owns every piece of mutable per-run state: how many links each
source page has accepted and which ``(source, target URL)`` pairs are
already taken. Checks run in a fixed order and the first failing check
names the rejection reason.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Collection, Dict, Mapping, Optional, Set, Tuple

from .anchors import AnchorRequest, AnchorResolver, validate_anchor_text
from .config import GenerationRules
from .text import content_overlap
from .types import PageInfo, ProposedLink, Verdict

logger = logging.getLogger(__name__)

SELF_LINK = "self_link"
MAX_LINKS_EXCEEDED = "max_links_exceeded"
DUPLICATE_URL = "duplicate_url"
CANNIBALIZATION = "cannibalization"
NO_NATURAL_ANCHOR = "no_natural_anchor"
STOP_ANCHOR = "stop_anchor"
BROKEN_URL = "404_url"

REJECTION_REASONS = (
    SELF_LINK,
    MAX_LINKS_EXCEEDED,
    DUPLICATE_URL,
    CANNIBALIZATION,
    NO_NATURAL_ANCHOR,
    STOP_ANCHOR,
    BROKEN_URL,
)

DEFAULT_LEVELS = {"low": 0.3, "medium": 0.5, "high": 0.7}


def _text_overlap(source: PageInfo, target: PageInfo) -> float:
    return content_overlap(source.text, target.text)


class ConstraintValidator:
    """Accept or reject proposals while keeping per-source budgets exact.

    Budget and duplicate checks are made under a per-source lock. Anchor
    resolution happens outside the lock, after which the budget and
    duplicate checks are repeated and the accepted count incremented in a
    single locked step, so concurrent lanes can never push a source page
    past ``max_links``.
    """

    def __init__(
        self,
        rules: GenerationRules,
        resolver: AnchorResolver,
        *,
        overlap: Callable[[PageInfo, PageInfo], float] = _text_overlap,
        levels: Optional[Mapping[str, float]] = None,
        known_broken: Collection[str] = (),
        replacement_for: Optional[Callable[[ProposedLink], Optional[PageInfo]]] = None,
        anchor_limits: Optional[Mapping[str, int]] = None,
    ) -> None:
        self.rules = rules
        self.resolver = resolver
        self.overlap = overlap
        self.levels = dict(levels or DEFAULT_LEVELS)
        self.known_broken = frozenset(known_broken)
        self.replacement_for = replacement_for
        limits = dict(anchor_limits or {})
        self.min_words = int(limits.get("min_words", 2))
        self.max_words = int(limits.get("max_words", 8))
        self.max_chars = int(limits.get("max_chars", 50))
        self.stop_anchors = tuple(phrase.lower() for phrase in rules.stop_anchors)

        self._accepted: Dict[int, int] = {}
        self._taken: Set[Tuple[int, str]] = set()
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()
        self.anchor_calls = 0

    def _lock_for(self, source_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(source_id)
            if lock is None:
                lock = self._locks[source_id] = threading.Lock()
            return lock

    def accepted_count(self, source_id: int) -> int:
        with self._lock_for(source_id):
            return self._accepted.get(source_id, 0)

    @property
    def cannibalization_threshold(self) -> float:
        return float(self.levels.get(self.rules.cannibalization_level, DEFAULT_LEVELS["medium"]))

    def validate(self, proposal: ProposedLink) -> Verdict:
        source = proposal.source
        target = proposal.target

        reason = self._precheck(source, target)
        if reason:
            return self._reject(proposal, target, reason)

        anchor = self._resolve_anchor(source, target)
        if anchor is None:
            return self._reject(proposal, target, NO_NATURAL_ANCHOR)
        if self._is_stop_anchor(anchor):
            return self._reject(proposal, target, STOP_ANCHOR, anchor)

        if target.url in self.known_broken and self.rules.broken_links_policy != "ignore":
            if self.rules.broken_links_policy == "delete":
                return self._reject(proposal, target, BROKEN_URL, anchor)
            return self._replace(proposal, anchor)

        return self._commit(proposal, target, anchor)

    def _precheck(self, source: PageInfo, target: PageInfo) -> Optional[str]:
        if source.id == target.id:
            return SELF_LINK
        with self._lock_for(source.id):
            reason = self._budget_reason(source, target)
        if reason:
            return reason
        if self.rules.cannibalization_enabled and self.overlap(source, target) > self.cannibalization_threshold:
            return CANNIBALIZATION
        return None

    def _budget_reason(self, source: PageInfo, target: PageInfo) -> Optional[str]:
        if self._accepted.get(source.id, 0) >= self.rules.max_links:
            return MAX_LINKS_EXCEEDED
        if self.rules.dedupe_links and (source.id, target.url) in self._taken:
            return DUPLICATE_URL
        return None

    def _resolve_anchor(self, source: PageInfo, target: PageInfo) -> Optional[str]:
        with self._guard:
            self.anchor_calls += 1
        request = AnchorRequest(
            source_context=source.text or source.title,
            target_title=target.title,
            target_description=target.description,
        )
        anchor = self.resolver.resolve(request)
        if anchor is None:
            return None
        anchor = " ".join(anchor.split())
        if not validate_anchor_text(anchor, self.min_words, self.max_words, self.max_chars):
            logger.debug("Discarding anchor '%s' for %s", anchor, target.url)
            return None
        return anchor

    def _is_stop_anchor(self, anchor: str) -> bool:
        lowered = anchor.lower()
        return any(phrase in lowered for phrase in self.stop_anchors)

    def _replace(self, proposal: ProposedLink, anchor: str) -> Verdict:
        alternate = self.replacement_for(proposal) if self.replacement_for else None
        source = proposal.source
        if alternate is None or alternate.url in self.known_broken:
            return self._reject(proposal, proposal.target, BROKEN_URL, anchor)
        if self._precheck(source, alternate):
            return self._reject(proposal, proposal.target, BROKEN_URL, anchor)
        replacement_anchor = self._resolve_anchor(source, alternate)
        if replacement_anchor is None or self._is_stop_anchor(replacement_anchor):
            return self._reject(proposal, proposal.target, BROKEN_URL, anchor)
        logger.info("Replacing unreachable %s with %s", proposal.target.url, alternate.url)
        return self._commit(proposal, alternate, replacement_anchor)

    def _commit(self, proposal: ProposedLink, target: PageInfo, anchor: str) -> Verdict:
        source = proposal.source
        with self._lock_for(source.id):
            reason = self._budget_reason(source, target)
            if reason:
                return self._reject(proposal, target, reason, anchor)
            self._accepted[source.id] = self._accepted.get(source.id, 0) + 1
            self._taken.add((source.id, target.url))
        logger.debug("Accepted %s -> %s (%s)", source.url, target.url, proposal.scenario)
        return Verdict(
            proposal=proposal,
            accepted=True,
            target=target,
            anchor_text=anchor,
            position=_anchor_position(source.text, anchor),
        )

    def _reject(self, proposal: ProposedLink, target: PageInfo, reason: str, anchor: str = "") -> Verdict:
        logger.debug("Rejected %s -> %s: %s", proposal.source.url, target.url, reason)
        return Verdict(
            proposal=proposal,
            accepted=False,
            target=target,
            anchor_text=anchor,
            reason=reason,
            position=_anchor_position(proposal.source.text, anchor) if anchor else 0,
        )


def _anchor_position(text: str, anchor: str) -> int:
    position = text.lower().find(anchor.lower()) if anchor else -1
    return max(position, 0)
