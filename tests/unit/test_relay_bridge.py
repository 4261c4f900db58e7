# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import base64
import json

import pytest

from config import AppConfig
from relay.bridge import RelayBridge

from fakes import HANG, FakeClientSocket, FakeOpener, FakeTransport, created, eventually


def make_config(**overrides) -> AppConfig:
    values = {
        "openai_api_key": "sk-test",
        "realtime_model": "gpt-4o-realtime-preview-2024-10-01",
        "greeting": "Hello",
        "connect_timeout_ms": 200,
        "handshake_timeout_ms": 500,
        "pending_queue_max": 8,
    }
    values.update(overrides)
    return AppConfig(**values)


async def start_link(bridge: RelayBridge, client: FakeClientSocket) -> asyncio.Task:
    task = asyncio.create_task(bridge.serve(client))
    await eventually(lambda: bridge.active_links == 1 or task.done())
    return task


# ---------------------------------------------------------------------
# Upstream open + session configuration
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upstream_is_opened_with_credentials():
    upstream = FakeTransport()
    opener = FakeOpener(upstream)
    bridge = RelayBridge(config=make_config(), open_transport=opener)
    client = FakeClientSocket()

    task = await start_link(bridge, client)
    await eventually(lambda: len(opener.calls) == 1)

    url, headers = opener.calls[0]
    assert url == "wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview-2024-10-01"
    assert headers == {"Authorization": "Bearer sk-test", "OpenAI-Beta": "realtime=v1"}

    client.disconnect()
    await task


@pytest.mark.asyncio
async def test_session_created_injects_configuration_then_passes_through():
    upstream = FakeTransport(created("sess_1"))
    bridge = RelayBridge(config=make_config(), open_transport=FakeOpener(upstream))
    client = FakeClientSocket()

    task = await start_link(bridge, client)
    await eventually(lambda: len(upstream.sent) == 3)

    update, greeting, response = upstream.sent_json()
    assert update["type"] == "session.update"
    assert update["session"]["input_audio_format"] == "pcm16"
    assert update["session"]["output_audio_format"] == "pcm16"
    assert update["session"]["input_audio_transcription"] == {"model": "whisper-1"}
    assert update["session"]["max_response_output_tokens"] == 500
    assert greeting["type"] == "conversation.item.create"
    assert greeting["item"]["content"][0]["text"] == "Hello"
    assert response["type"] == "response.create"

    # session.created itself reaches the client verbatim
    assert client.sent[0] == created("sess_1")

    link = next(iter(bridge.links.values()))
    assert link.passthrough
    assert link.session_id == "sess_1"

    client.disconnect()
    await task


@pytest.mark.asyncio
async def test_greeting_can_be_disabled():
    upstream = FakeTransport(created())
    bridge = RelayBridge(config=make_config(greeting=None), open_transport=FakeOpener(upstream))
    client = FakeClientSocket()

    task = await start_link(bridge, client)
    await eventually(lambda: len(upstream.sent) == 2)

    assert upstream.sent_types() == ["session.update", "response.create"]

    client.disconnect()
    await task


@pytest.mark.asyncio
async def test_client_frames_before_session_created_are_held_then_flushed():
    upstream = FakeTransport()
    bridge = RelayBridge(config=make_config(), open_transport=FakeOpener(upstream))
    client = FakeClientSocket()

    task = await start_link(bridge, client)
    client.push_json({"type": "input_audio_buffer.commit"})
    await asyncio.sleep(0.01)
    assert upstream.sent == []

    upstream.feed(created())
    await eventually(lambda: len(upstream.sent) == 4)

    assert upstream.sent_types() == [
        "session.update",
        "conversation.item.create",
        "response.create",
        "input_audio_buffer.commit",
    ]

    client.disconnect()
    await task


# ---------------------------------------------------------------------
# Client -> upstream normalization
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_raw_binary_audio_becomes_one_append_then_one_commit():
    upstream = FakeTransport(created())
    bridge = RelayBridge(config=make_config(), open_transport=FakeOpener(upstream))
    client = FakeClientSocket()
    pcm = b"\x01\x00\xff\x7f" * 4

    task = await start_link(bridge, client)
    await eventually(lambda: len(upstream.sent) == 3)

    client.push_bytes(pcm)
    await eventually(lambda: len(upstream.sent) == 5)

    append, commit = upstream.sent_json()[3:]
    assert append["type"] == "input_audio_buffer.append"
    assert base64.b64decode(append["audio"]) == pcm
    assert commit["type"] == "input_audio_buffer.commit"

    client.disconnect()
    await task


@pytest.mark.asyncio
async def test_untyped_audio_json_becomes_append_then_commit():
    upstream = FakeTransport(created())
    bridge = RelayBridge(config=make_config(), open_transport=FakeOpener(upstream))
    client = FakeClientSocket()

    task = await start_link(bridge, client)
    await eventually(lambda: len(upstream.sent) == 3)

    client.push_json({"audio": "AQACAA=="})
    await eventually(lambda: len(upstream.sent) == 5)

    assert upstream.sent_types()[3:] == ["input_audio_buffer.append", "input_audio_buffer.commit"]
    assert upstream.sent_json()[3]["audio"] == "AQACAA=="

    client.disconnect()
    await task


@pytest.mark.asyncio
async def test_typed_append_is_reenveloped_without_commit():
    upstream = FakeTransport(created())
    bridge = RelayBridge(config=make_config(), open_transport=FakeOpener(upstream))
    client = FakeClientSocket()

    task = await start_link(bridge, client)
    await eventually(lambda: len(upstream.sent) == 3)

    client.push_json({"type": "input_audio_buffer.append", "audio": "AQA=", "event_id": "client_1"})
    client.push_json({"type": "response.create"})
    await eventually(lambda: len(upstream.sent) == 5)

    append = upstream.sent_json()[3]
    assert append["type"] == "input_audio_buffer.append"
    assert append["audio"] == "AQA="
    assert append["event_id"] != "client_1"
    assert upstream.sent_types()[4] == "response.create"

    client.disconnect()
    await task


@pytest.mark.asyncio
async def test_other_client_messages_are_forwarded_verbatim():
    upstream = FakeTransport(created())
    bridge = RelayBridge(config=make_config(), open_transport=FakeOpener(upstream))
    client = FakeClientSocket()
    raw = '{"type": "conversation.item.truncate", "item_id": "it_1", "audio_end_ms": 120}'

    task = await start_link(bridge, client)
    await eventually(lambda: len(upstream.sent) == 3)

    client.push_text(raw)
    await eventually(lambda: len(upstream.sent) == 4)

    assert upstream.sent[3] == raw

    client.disconnect()
    await task


@pytest.mark.asyncio
async def test_invalid_client_json_gets_an_error_reply_and_link_survives():
    upstream = FakeTransport(created())
    bridge = RelayBridge(config=make_config(), open_transport=FakeOpener(upstream))
    client = FakeClientSocket()

    task = await start_link(bridge, client)
    await eventually(lambda: len(upstream.sent) == 3)

    client.push_text("{not json")
    await eventually(lambda: any(m.get("type") == "error" for m in client.sent_json()))

    assert bridge.active_links == 1
    assert len(upstream.sent) == 3

    client.disconnect()
    await task


# ---------------------------------------------------------------------
# Upstream -> client
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upstream_messages_reach_the_client_in_order():
    upstream = FakeTransport(created())
    bridge = RelayBridge(config=make_config(), open_transport=FakeOpener(upstream))
    client = FakeClientSocket()

    task = await start_link(bridge, client)
    frames = [
        json.dumps({"type": "response.audio.delta", "delta": "AAA="}),
        json.dumps({"type": "response.text.delta", "delta": "hi"}),
        json.dumps({"type": "something.new", "x": 1}),
    ]
    for frame in frames:
        upstream.feed(frame)
    await eventually(lambda: len(client.sent) == 4)

    assert client.sent[1:] == frames

    client.disconnect()
    await task


# ---------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upstream_close_closes_the_client_and_stops_forwarding(events):
    upstream = FakeTransport(created())
    bridge = RelayBridge(config=make_config(), open_transport=FakeOpener(upstream))
    client = FakeClientSocket()

    task = await start_link(bridge, client)
    await eventually(lambda: len(upstream.sent) == 3)

    upstream.end()
    await asyncio.wait_for(task, timeout=1.0)

    assert client.closed
    assert bridge.active_links == 0

    # late client frames go nowhere
    client.push_bytes(b"\x00\x00")
    await asyncio.sleep(0.01)
    assert len(upstream.sent) == 3

    closed = [e for e in events if e["event_type"] == "RELAY_LINK_CLOSED"]
    assert len(closed) == 1
    assert closed[0]["reason"] == "upstream_closed"


@pytest.mark.asyncio
async def test_upstream_drop_closes_the_client():
    upstream = FakeTransport(created())
    bridge = RelayBridge(config=make_config(), open_transport=FakeOpener(upstream))
    client = FakeClientSocket()

    task = await start_link(bridge, client)
    await eventually(lambda: len(upstream.sent) == 3)

    upstream.drop()
    await asyncio.wait_for(task, timeout=1.0)

    assert client.closed
    assert bridge.links == {}


@pytest.mark.asyncio
async def test_client_disconnect_closes_upstream(events):
    upstream = FakeTransport(created())
    bridge = RelayBridge(config=make_config(), open_transport=FakeOpener(upstream))
    client = FakeClientSocket()

    task = await start_link(bridge, client)
    await eventually(lambda: len(upstream.sent) == 3)

    client.disconnect()
    await asyncio.wait_for(task, timeout=1.0)

    assert upstream.closed
    assert bridge.active_links == 0
    closed = [e for e in events if e["event_type"] == "RELAY_LINK_CLOSED"]
    assert closed[0]["reason"] == "client_disconnect"


@pytest.mark.asyncio
async def test_upstream_open_failure_is_reported_to_the_client():
    bridge = RelayBridge(
        config=make_config(),
        open_transport=FakeOpener(OSError("connection refused")),
    )
    client = FakeClientSocket()

    await asyncio.wait_for(bridge.serve(client), timeout=1.0)

    (error,) = client.sent_json()
    assert error["type"] == "error"
    assert "connection refused" in error["error"]["message"]
    assert client.closed
    assert bridge.links == {}


@pytest.mark.asyncio
async def test_upstream_open_timeout_is_reported_to_the_client():
    bridge = RelayBridge(
        config=make_config(connect_timeout_ms=20),
        open_transport=FakeOpener(HANG),
    )
    client = FakeClientSocket()

    await asyncio.wait_for(bridge.serve(client), timeout=1.0)

    (error,) = client.sent_json()
    assert error["error"]["message"] == "Upstream connection timed out"
    assert client.closed


@pytest.mark.asyncio
async def test_missing_session_created_times_out_the_link():
    upstream = FakeTransport()
    bridge = RelayBridge(
        config=make_config(handshake_timeout_ms=20),
        open_transport=FakeOpener(upstream),
    )
    client = FakeClientSocket()

    await asyncio.wait_for(bridge.serve(client), timeout=1.0)

    assert client.sent_json()[-1]["type"] == "error"
    assert upstream.closed
    assert client.closed


@pytest.mark.asyncio
async def test_links_are_isolated_per_client():
    first_up = FakeTransport(created("a"))
    second_up = FakeTransport(created("b"))
    bridge = RelayBridge(config=make_config(), open_transport=FakeOpener(first_up, second_up))
    first, second = FakeClientSocket(), FakeClientSocket()

    first_task = asyncio.create_task(bridge.serve(first))
    await eventually(lambda: len(first_up.sent) == 3)
    second_task = asyncio.create_task(bridge.serve(second))
    await eventually(lambda: len(second_up.sent) == 3)
    assert bridge.active_links == 2

    first.disconnect()
    await first_task

    assert first_up.closed
    assert not second_up.closed
    assert bridge.active_links == 1

    second.push_json({"type": "input_audio_buffer.commit"})
    await eventually(lambda: len(second_up.sent) == 4)

    second.disconnect()
    await second_task
    assert bridge.active_links == 0


@pytest.mark.asyncio
async def test_no_session_setup_is_sent_once_the_client_is_gone(events):
    upstream = FakeTransport(created())
    bridge = RelayBridge(config=make_config(), open_transport=FakeOpener(upstream))
    client = FakeClientSocket()
    client.closed = True

    task = await start_link(bridge, client)
    await eventually(lambda: any(e["event_type"] == "RELAY_CLIENT_SEND_FAILED" for e in events))
    await asyncio.sleep(0.01)

    upstream.end()
    await asyncio.wait_for(task, timeout=1.0)

    assert upstream.sent == []
    assert not any(e["event_type"] == "RELAY_SESSION_CONFIGURED" for e in events)
    closed = [e for e in events if e["event_type"] == "RELAY_LINK_CLOSED"]
    assert closed[0]["reason"] == "client_gone"
