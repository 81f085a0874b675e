import json

import pytest

from labquery.schemas.events import (
    ErrorEvent,
    MessageEndEvent,
    PlotResultEvent,
    SessionStartEvent,
    ToolStartEvent,
)
from labquery.services.sessions.channel import EventChannel


def _payload(frame: str) -> dict:
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    return json.loads(frame[len("data: ") :])


def test_session_start_uses_camel_case_id():
    payload = _payload(SessionStartEvent(session_id="s1").to_sse())

    assert payload == {"type": "session_start", "sessionId": "s1"}


def test_result_event_shape():
    payload = _payload(
        PlotResultEvent(
            message_id="m1",
            plot_title="Vitamin D",
            rows=[{"t": "2024-01-01", "y": 30}],
            columns=["t", "y"],
        ).to_sse()
    )

    assert payload["type"] == "plot_result"
    assert payload["message_id"] == "m1"
    assert payload["plot_title"] == "Vitamin D"
    assert payload["rows"] == [{"t": "2024-01-01", "y": 30}]
    assert "sql" not in payload


def test_error_event_message_id_is_optional():
    payload = _payload(ErrorEvent(code="TIMEOUT", message="Please try simplifying").to_sse())

    assert payload == {"type": "error", "code": "TIMEOUT", "message": "Please try simplifying"}


def test_tool_start_params_default_empty():
    event = ToolStartEvent(message_id="m1", tool="finalize_query", iteration=1)

    assert _payload(event.to_sse())["params"] == {}


@pytest.mark.anyio
async def test_channel_buffers_until_first_attach():
    channel = EventChannel()
    channel.publish(SessionStartEvent(session_id="s1"))
    channel.publish(ToolStartEvent(message_id="m1", tool="t", iteration=1))

    channel.attach()

    assert (await channel.next_event(timeout=0.1)).type == "session_start"
    assert (await channel.next_event(timeout=0.1)).type == "tool_start"


@pytest.mark.anyio
async def test_channel_drops_events_while_detached():
    channel = EventChannel()
    channel.attach()
    channel.detach()

    delivered = channel.publish(ToolStartEvent(message_id="m1", tool="t", iteration=1))

    assert delivered is False
    assert channel.dropped == 1
    with pytest.raises(TimeoutError):
        await channel.next_event(timeout=0.01)


@pytest.mark.anyio
async def test_nothing_follows_message_end():
    channel = EventChannel()
    channel.attach()
    channel.publish(MessageEndEvent(message_id="m1"))

    assert channel.publish(ErrorEvent(message_id="m1", code="X", message="late")) is False
    assert channel.publish(MessageEndEvent(message_id="m1")) is False
    assert channel.publish(MessageEndEvent(message_id="m2")) is True


@pytest.mark.anyio
async def test_close_ends_stream_after_pending_events():
    channel = EventChannel()
    channel.publish(SessionStartEvent(session_id="s1"))
    channel.close()

    assert (await channel.next_event()).type == "session_start"
    assert await channel.next_event() is None
    assert channel.publish(SessionStartEvent(session_id="s1")) is False
