import asyncio
import logging

import httpx
import pytest

from chatrelay.client.engine import ClientEngine, Idle, Streaming, ToolPending
from chatrelay.client.tool_bridge import ToolBridge
from chatrelay.errors import ValidationError
from tests.utils import FakeTransport, make_engine as _engine, wire_event


def _history_shape(engine: ClientEngine) -> list[tuple[str, str]]:
    return [(turn.role, turn.content[0].type) for turn in engine.history]


@pytest.mark.asyncio
async def test_chat_turn_is_committed_to_history_on_done():
    engine = _engine()
    transport = FakeTransport()
    await engine.attach(transport)

    await engine.send_message("hi")
    assert transport.sent == [{"message": "hi", "history": []}]
    assert engine.state == Streaming()

    await engine.handle_event(wire_event("started", 0))
    await engine.handle_event(wire_event("delta", 1, text="A"))
    await engine.handle_event(wire_event("delta", 3, text="C"))
    await engine.handle_event(wire_event("delta", 2, text="B"))
    await engine.handle_event(wire_event("usage", 4, input_tokens=3, output_tokens=3, session_total=6, session_limit=50000))
    await engine.handle_event(wire_event("done", 5))

    assert engine.state == Idle()
    assert engine.history[-1].content[0].text == "ABC"
    assert _history_shape(engine) == [("user", "text"), ("assistant", "text")]
    assert engine.last_usage["session_total"] == 6


@pytest.mark.asyncio
async def test_next_message_carries_previous_history():
    engine = _engine()
    transport = FakeTransport()
    await engine.attach(transport)

    await engine.send_message("first")
    await engine.handle_event(wire_event("delta", 0, text="one"))
    await engine.handle_event(wire_event("done", 1))
    await engine.send_message("second", model="claude-x")

    payload = transport.sent[-1]
    assert payload["message"] == "second"
    assert payload["model"] == "claude-x"
    assert [turn["role"] for turn in payload["history"]] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_sends_are_queued_while_offline_and_flushed_in_order():
    engine = _engine()

    await engine.send_message("one")
    await engine.send_message("two")
    assert [item["message"] for item in engine.outbox] == ["one", "two"]

    transport = FakeTransport()
    await engine.attach(transport)

    assert [item["message"] for item in transport.sent] == ["one", "two"]
    assert not engine.outbox


@pytest.mark.asyncio
async def test_empty_message_is_rejected_locally():
    engine = _engine()

    with pytest.raises(ValidationError):
        await engine.send_message("   ")


@pytest.mark.asyncio
async def test_tool_round_trip_orders_history_and_resumes():
    engine = _engine()
    transport = FakeTransport()
    await engine.attach(transport)

    await engine.send_message("where is the router?")
    await engine.handle_event(wire_event("started", 0))
    await engine.handle_event(wire_event("delta", 1, text="Let me look."))
    await engine.handle_event(
        wire_event("tool_use", 3, id="t1", name="github_search", input={"repo": "a/b", "q": "router"})
    )
    assert engine.state == ToolPending("t1")

    # Trailing events of the suspended stream are ignored.
    await engine.handle_event(wire_event("delta", 4, text="ignored"))
    await engine.handle_event(wire_event("done", 5))

    await engine.wait_for_tools()
    sent = transport.sent[-1]
    assert sent["type"] == "tool_result"
    assert sent["tool_use_id"] == "t1"
    assert "router.py" in sent["content"]
    assert "is_error" not in sent
    assert [turn["role"] for turn in sent["history"]] == ["user", "assistant", "assistant", "user"]
    assert "t1" in engine.pending_acks
    assert engine.state == Streaming()

    await engine.handle_event(wire_event("ack", 0, tool_use_id="t1"))
    assert engine.pending_acks == {}

    await engine.handle_event(wire_event("delta", 1, text="It is in router.py"))
    await engine.handle_event(wire_event("done", 2))

    assert _history_shape(engine) == [
        ("user", "text"),
        ("assistant", "text"),
        ("assistant", "tool_use"),
        ("user", "tool_result"),
        ("assistant", "text"),
    ]
    assert engine.history[1].content[0].text == "Let me look."
    assert engine.history[-1].content[0].text == "It is in router.py"
    assert engine.state == Idle()


@pytest.mark.asyncio
async def test_failed_tool_call_is_sent_as_error_result():
    engine = _engine(lambda request: httpx.Response(502))
    transport = FakeTransport()
    await engine.attach(transport)

    await engine.handle_event(wire_event("tool_use", 0, id="t1", name="github_search", input={}))
    await engine.wait_for_tools()

    sent = transport.sent[-1]
    assert sent["is_error"] is True
    assert sent["content"] == "Tool HTTP 502"
    assert engine.history[-1].content[0].is_error is True


@pytest.mark.asyncio
async def test_misconfigured_tool_endpoint_still_sends_error_result():
    engine = ClientEngine(
        ToolBridge({"github_search": "http://search:notaport/"}), debounce_ms=5
    )
    transport = FakeTransport()
    await engine.attach(transport)

    await engine.send_message("search please")
    await engine.handle_event(wire_event("tool_use", 0, id="t1", name="github_search", input={}))
    await engine.wait_for_tools()

    sent = transport.sent[-1]
    assert sent["type"] == "tool_result"
    assert sent["tool_use_id"] == "t1"
    assert sent["is_error"] is True
    assert sent["content"].startswith("Tool dispatch failed")
    assert _history_shape(engine) == [
        ("user", "text"),
        ("assistant", "tool_use"),
        ("user", "tool_result"),
    ]
    engine.close()
    await engine.tool_bridge.aclose()


@pytest.mark.asyncio
async def test_missing_ack_is_logged_without_retry(caplog):
    engine = _engine(ack_timeout=0.01)
    transport = FakeTransport()
    await engine.attach(transport)

    with caplog.at_level(logging.ERROR, logger="chatrelay"):
        await engine.handle_event(wire_event("tool_use", 0, id="t1", name="github_search", input={}))
        await engine.wait_for_tools()
        await asyncio.sleep(0.05)

    assert engine.failed_acks == ["t1"]
    assert engine.pending_acks == {}
    assert len([m for m in transport.sent if m.get("type") == "tool_result"]) == 1
    assert any("ACK timeout" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_error_event_ends_the_turn():
    errors = []
    engine = _engine(on_error=errors.append)
    await engine.attach(FakeTransport())

    await engine.send_message("hi")
    await engine.handle_event(wire_event("error", 1, message="Token limit exceeded", code="TOKEN_LIMIT_EXCEEDED"))

    assert engine.state == Idle()
    assert errors[0]["code"] == "TOKEN_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_unknown_event_types_are_ignored():
    engine = _engine()

    await engine.handle_event({"type": "mystery", "seq": 1})

    assert engine.state == Idle()
