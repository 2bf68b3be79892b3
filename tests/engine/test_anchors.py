"""Anchor resolution tests."""

from __future__ import annotations

import io
import json
import threading
from unittest import mock

from linkplanner.engine.anchors import (
    AnchorRequest,
    ChatAnchorResolver,
    PhraseAnchorResolver,
    TimeboxedResolver,
    clean_anchor_text,
    validate_anchor_text,
)


def test_validate_anchor_text_limits():
    assert validate_anchor_text("espresso machine guide")
    assert not validate_anchor_text("espresso")
    assert not validate_anchor_text("one two three four five six seven eight nine")
    assert not validate_anchor_text("a very long anchor phrase exceeding the character limit")
    assert not validate_anchor_text("of the")
    assert not validate_anchor_text("visit our site today")
    assert not validate_anchor_text("what we offer here")


def test_clean_anchor_text_strips_quotes_and_whitespace():
    assert clean_anchor_text('  "milk   frothing tips" ') == "milk frothing tips"


def test_phrase_resolver_prefers_exact_title():
    resolver = PhraseAnchorResolver()
    request = AnchorRequest(
        source_context="Before buying, read our Espresso Machine Buying Guide and compare models.",
        target_title="Espresso Machine Buying Guide",
    )
    assert resolver.resolve(request) == "Espresso Machine Buying Guide"


def test_phrase_resolver_falls_back_to_description_phrase():
    resolver = PhraseAnchorResolver()
    request = AnchorRequest(
        source_context="Dialing in grind size matters for every shot you pull.",
        target_title="The Complete Barista Handbook",
        target_description="Grind size charts and extraction tips. Updated yearly.",
    )
    assert resolver.resolve(request) == "grind size"


def test_phrase_resolver_returns_none_without_match():
    resolver = PhraseAnchorResolver()
    request = AnchorRequest(source_context="Nothing related here.", target_title="Tea Ceremonies of Japan")
    assert resolver.resolve(request) is None


def _chat_response(content):
    body = json.dumps({"choices": [{"message": {"content": content}}]}).encode("utf-8")
    response = mock.MagicMock()
    response.__enter__.return_value = io.BytesIO(body)
    return response


def test_chat_resolver_posts_payload_and_cleans_reply():
    resolver = ChatAnchorResolver("https://llm.test/v1/chat/completions", api_key="secret", model="tiny")
    request = AnchorRequest("Some source text about roasting.", "Roasting Profiles", "How to roast.")

    with mock.patch("urllib.request.urlopen", return_value=_chat_response('"roasting profiles"')) as urlopen:
        assert resolver.resolve(request) == "roasting profiles"

    sent = urlopen.call_args.args[0]
    payload = json.loads(sent.data.decode("utf-8"))
    assert payload["model"] == "tiny"
    assert payload["max_tokens"] == 50
    assert sent.get_header("Authorization") == "Bearer secret"
    assert "Roasting Profiles" in payload["messages"][1]["content"]


def test_chat_resolver_none_reply_means_no_anchor():
    resolver = ChatAnchorResolver("https://llm.test/v1/chat/completions")
    request = AnchorRequest("Source text.", "Target")
    with mock.patch("urllib.request.urlopen", return_value=_chat_response("NONE")):
        assert resolver.resolve(request) is None
    with mock.patch("urllib.request.urlopen", return_value=_chat_response("click here to read our site")):
        assert resolver.resolve(request) is None


def test_timeboxed_resolver_swallows_timeouts_and_errors():
    release = threading.Event()

    class Slow:
        def resolve(self, request):
            release.wait(2)
            return "too late anchor"

    class Failing:
        def resolve(self, request):
            raise RuntimeError("upstream 500")

    request = AnchorRequest("context", "Target Title")
    try:
        assert TimeboxedResolver(Slow(), timeout=0.05).resolve(request) is None
        assert TimeboxedResolver(Failing(), timeout=1).resolve(request) is None
    finally:
        release.set()
