import json
from datetime import datetime, timezone

import httpx
import pytest

from solo_tutor.runtime.memory.context_assembler import ContextAssembler
from solo_tutor.runtime.memory.errors import GenerationFailure
from solo_tutor.runtime.memory.generation_client import GenerationClient, GenerationConfig, build_messages
from solo_tutor.runtime.memory.models import Turn
from solo_tutor.runtime.memory.prompting import CANVAS_PERSONA
from solo_tutor.runtime.memory.retry import RetryPolicy


def _completion(text):
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}]}


def _client(handler):
    cfg = GenerationConfig(api_key="sk-test", retry=RetryPolicy(max_attempts=2, sleep=lambda _: None))
    return GenerationClient(cfg, transport=httpx.MockTransport(handler))


def _recent_context():
    turn = Turn(
        conversation_id="c1",
        role="user",
        content="I tried one-point perspective",
        created_at=datetime(2025, 6, 1, 10, 0, tzinfo=timezone.utc),
    )
    return ContextAssembler().assemble([], [turn])


def test_generate_sends_persona_context_and_settings():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion("Great progress on your vanishing point!"))

    with _client(handler) as client:
        reply = client.generate(CANVAS_PERSONA, _recent_context(), "What next?")

    assert reply == "Great progress on your vanishing point!"
    body = seen["body"]
    assert seen["path"].endswith("/chat/completions")
    assert body["model"] == "gpt-4o"
    assert body["max_tokens"] == 500
    assert body["temperature"] == 0.8
    system, user = body["messages"]
    assert system["role"] == "system"
    assert "You are Canvas" in system["content"]
    assert "=== RECENT CONVERSATION ===" in system["content"]
    assert user == {"role": "user", "content": "What next?"}


def test_image_ref_becomes_multimodal_user_message():
    messages = build_messages(CANVAS_PERSONA, ContextAssembler().assemble([], []), "Thoughts?", "https://cdn.example/sketch.png")
    user = messages[1].model_dump()
    assert user["content"][0] == {"type": "text", "text": "Thoughts?"}
    assert user["content"][1] == {"type": "image_url", "image_url": {"url": "https://cdn.example/sketch.png"}}


def test_empty_context_sends_bare_persona():
    messages = build_messages(CANVAS_PERSONA, ContextAssembler().assemble([], []), "Hi")
    assert messages[0].content == CANVAS_PERSONA.strip()


def test_empty_reply_is_a_failure():
    client = _client(lambda request: httpx.Response(200, json=_completion("   ")))
    with pytest.raises(GenerationFailure):
        client.generate(CANVAS_PERSONA, _recent_context(), "Hi")


def test_missing_choices_is_a_failure():
    client = _client(lambda request: httpx.Response(200, json={"choices": []}))
    with pytest.raises(GenerationFailure):
        client.generate(CANVAS_PERSONA, _recent_context(), "Hi")


def test_timeout_surfaces_as_generation_failure():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = _client(handler)
    with pytest.raises(GenerationFailure) as info:
        client.generate(CANVAS_PERSONA, _recent_context(), "Hi")
    assert info.value.stage == "Generating"
