"""Anchor text resolution.

A resolver receives an :class:`AnchorRequest` and returns anchor text or
``None`` when no natural anchor exists. Two resolvers ship with the engine:
a phrase matcher that looks for the target's title and description phrases
inside the source context, and a client for an OpenAI-compatible chat
completion endpoint. :class:`TimeboxedResolver` wraps either one with a hard
timeout so a slow resolver never stalls a run.
"""

from __future__ import annotations

import json
import logging
import re
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple

from .text import STOPWORDS

logger = logging.getLogger(__name__)

_SELF_PROMOTION = (
    re.compile(r"\bour site\b", re.IGNORECASE),
    re.compile(r"\bour company\b", re.IGNORECASE),
    re.compile(r"\bwe offer\b", re.IGNORECASE),
)

_VARIANT_PRIORITY = {
    "exact": 1.0,
    "partial": 0.85,
    "description": 0.7,
}

_SENTENCE_SPLIT_RE = re.compile(r"[.!?;:\n]+")
_QUOTES = "\"'`«»“”‘’"


@dataclass(frozen=True)
class AnchorRequest:
    source_context: str
    target_title: str
    target_description: str = ""


class AnchorResolver(Protocol):
    def resolve(self, request: AnchorRequest) -> Optional[str]:
        ...


def validate_anchor_text(text: str, min_words: int = 2, max_words: int = 8, max_chars: int = 50) -> bool:
    """Return True when ``text`` is usable as anchor text."""

    words = text.split()
    if not min_words <= len(words) <= max_words:
        return False
    if len(text) > max_chars:
        return False
    if all(word.lower() in STOPWORDS for word in words):
        return False
    return not any(pattern.search(text) for pattern in _SELF_PROMOTION)


def clean_anchor_text(text: str) -> str:
    cleaned = " ".join(text.split())
    return cleaned.strip(_QUOTES).strip()


class PhraseAnchorResolver:
    """Pick the best target phrase that literally appears in the source."""

    def __init__(self, min_words: int = 2, max_words: int = 8, max_chars: int = 50) -> None:
        self.min_words = min_words
        self.max_words = max_words
        self.max_chars = max_chars

    def resolve(self, request: AnchorRequest) -> Optional[str]:
        phrases = self._candidate_phrases(request)
        if not phrases or not request.source_context:
            return None

        text = request.source_context
        lowered = text.lower()
        text_length = max(len(text), 1)
        best: Optional[Tuple[float, int, str]] = None
        for phrase, variant in phrases:
            for match in re.finditer(r"\b" + re.escape(phrase.lower()) + r"\b", lowered):
                start, end = match.span()
                actual = text[start:end]
                if not validate_anchor_text(actual, self.min_words, self.max_words, self.max_chars):
                    continue
                score = _anchor_score(actual, variant, start, text_length)
                if best is None or score > best[0] or (score == best[0] and start < best[1]):
                    best = (score, start, actual)
        return best[2] if best else None

    def _candidate_phrases(self, request: AnchorRequest) -> List[Tuple[str, str]]:
        phrases: Dict[str, str] = {}
        title = " ".join(request.target_title.split())
        if title:
            phrases.setdefault(title, "exact")
            head = _head_terms(title)
            if head:
                phrases.setdefault(head, "partial")
            tail = _tail_terms(title)
            if tail:
                phrases.setdefault(tail, "partial")
        for phrase in _description_phrases(request.target_description):
            phrases.setdefault(phrase, "description")
        return [(phrase, variant) for phrase, variant in phrases.items() if len(phrase.split()) >= self.min_words]


def _head_terms(title: str) -> str:
    words = title.split()
    if len(words) <= 4:
        return title
    return " ".join(words[:4])


def _tail_terms(title: str) -> str:
    words = title.split()
    if len(words) <= 4:
        return title
    return " ".join(words[-3:])


def _description_phrases(description: str, sizes: Tuple[int, ...] = (4, 3, 2)) -> List[str]:
    if not description:
        return []
    first = _SENTENCE_SPLIT_RE.split(description.strip(), maxsplit=1)[0]
    words = [word.strip(",()") for word in first.split()]
    words = [word for word in words if word]
    phrases: List[str] = []
    for size in sizes:
        for start in range(0, len(words) - size + 1):
            window = words[start:start + size]
            if window[0].lower() in STOPWORDS or window[-1].lower() in STOPWORDS:
                continue
            phrases.append(" ".join(window))
    return phrases


def _anchor_score(text: str, variant: str, start: int, text_length: int) -> float:
    variant_weight = _VARIANT_PRIORITY.get(variant, 0.5)
    position_factor = 1 - (start / text_length)
    length = len(text.split())
    length_factor = max(0.0, 1 - abs(length - 4) / 10)
    return variant_weight * (0.7 + 0.2 * position_factor + 0.1 * length_factor)


class ChatAnchorResolver:
    """Ask an OpenAI-compatible chat completion endpoint for anchor text."""

    system_prompt = "You are an SEO specialist who writes natural anchor text for internal links."

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        model: str = "gpt-3.5-turbo",
        timeout: float = 10.0,
        max_words: int = 8,
        max_chars: int = 50,
        context_chars: int = 500,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.max_words = max_words
        self.max_chars = max_chars
        self.context_chars = context_chars

    def build_messages(self, request: AnchorRequest) -> List[Dict[str, str]]:
        context = request.source_context[: self.context_chars]
        prompt = (
            f'Source text: "{context}"\n\n'
            "Target page:\n"
            f'- Title: "{request.target_title}"\n'
            f'- Description: "{request.target_description}"\n\n'
            "Find a phrase of 2-6 words in the source text that best describes the target page. "
            f"If there is none, write a short phrase of at most {self.max_words} words.\n"
            "Reply with the anchor text only, without HTML or quotes. "
            'Avoid generic phrases such as "click here", "read more" or "learn more". '
            "Reply NONE if no natural anchor exists."
        )
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": prompt},
        ]

    def resolve(self, request: AnchorRequest) -> Optional[str]:
        payload = {
            "model": self.model,
            "messages": self.build_messages(request),
            "max_tokens": 50,
            "temperature": 0.3,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        http_request = urllib.request.Request(
            self.api_url,
            data=json.dumps(payload).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        with urllib.request.urlopen(http_request, timeout=self.timeout) as resp:
            body = json.loads(resp.read().decode("utf-8"))
        content = body["choices"][0]["message"]["content"] or ""
        anchor = clean_anchor_text(content)
        if not anchor or anchor.upper() == "NONE":
            return None
        if not validate_anchor_text(anchor, max_words=self.max_words, max_chars=self.max_chars):
            return None
        return anchor


_resolver_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="linkplanner-anchor")


class TimeboxedResolver:
    """Bound a resolver's run time; failures and timeouts mean no anchor."""

    def __init__(self, inner: AnchorResolver, timeout: float = 10.0) -> None:
        self.inner = inner
        self.timeout = timeout

    def resolve(self, request: AnchorRequest) -> Optional[str]:
        future = _resolver_pool.submit(self.inner.resolve, request)
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeout:
            future.cancel()
            logger.warning("Anchor resolver timed out after %.1fs for '%s'", self.timeout, request.target_title)
            return None
        except Exception as exc:
            logger.warning("Anchor resolver failed for '%s': %s", request.target_title, exc)
            return None
