"""
Tests for the audio bridge: relay in both directions and barge-in.
"""

import base64
import json
from unittest.mock import AsyncMock

import pytest

from src.callbridge.acs_protocol import AudioFrame, FrameDirection
from src.callbridge.audio_bridge import AudioStreamingBridge


class _Caller:
    """Records what the bridge writes to the media socket."""

    def __init__(self):
        self.open = True
        self.messages = []

    async def send(self, message: str) -> None:
        self.messages.append(json.loads(message))

    @property
    def kinds(self):
        return [m["kind"] for m in self.messages]


def _bridge(caller: _Caller, send_to_ai=None) -> AudioStreamingBridge:
    return AudioStreamingBridge(
        send_to_caller=caller.send,
        is_socket_open=lambda: caller.open,
        send_to_ai=send_to_ai or AsyncMock(),
        call_id="test-call",
    )


@pytest.mark.asyncio
async def test_inbound_frame_is_appended_to_ai_buffer(sample_pcm_audio):
    send_to_ai = AsyncMock()
    bridge = _bridge(_Caller(), send_to_ai)

    await bridge.forward_inbound(AudioFrame(payload=sample_pcm_audio, direction=FrameDirection.INBOUND))

    event = send_to_ai.await_args.args[0]
    assert event["type"] == "input_audio_buffer.append"
    assert base64.b64decode(event["audio"]) == sample_pcm_audio
    assert bridge.inbound_frames == 1


@pytest.mark.asyncio
async def test_inbound_failure_drops_frame():
    bridge = _bridge(_Caller(), AsyncMock(side_effect=RuntimeError("queue gone")))

    await bridge.forward_inbound(AudioFrame(payload=b"\x01\x02", direction=FrameDirection.INBOUND))

    assert bridge.inbound_frames == 0
    assert bridge.dropped_frames == 1


@pytest.mark.asyncio
async def test_outbound_delta_is_wrapped_for_acs():
    caller = _Caller()
    bridge = _bridge(caller)
    bridge.begin_response()

    await bridge.forward_outbound_delta(b"\x01\x02\x03\x04")

    assert caller.kinds == ["AudioData"]
    assert base64.b64decode(caller.messages[0]["audioData"]["data"]) == b"\x01\x02\x03\x04"
    assert bridge.is_playing


@pytest.mark.asyncio
async def test_outbound_dropped_when_socket_closed():
    caller = _Caller()
    caller.open = False
    bridge = _bridge(caller)

    await bridge.forward_outbound_delta(b"\x01\x02")

    assert caller.messages == []
    assert bridge.dropped_frames == 1


@pytest.mark.asyncio
async def test_barge_in_sends_stop_audio_before_anything_else():
    caller = _Caller()
    bridge = _bridge(caller)
    bridge.begin_response()
    await bridge.forward_outbound_delta(b"\x01\x02")

    await bridge.interrupt()
    # Late deltas from the interrupted response
    await bridge.forward_outbound_delta(b"\x03\x04")
    await bridge.forward_outbound_delta(b"\x05\x06")

    assert caller.kinds == ["AudioData", "StopAudio"]
    assert not bridge.is_playing

    # The next response plays again
    bridge.begin_response()
    await bridge.forward_outbound_delta(b"\x07\x08")

    assert caller.kinds == ["AudioData", "StopAudio", "AudioData"]
    assert base64.b64decode(caller.messages[-1]["audioData"]["data"]) == b"\x07\x08"


@pytest.mark.asyncio
async def test_interrupt_while_idle_still_clears_playback():
    caller = _Caller()
    bridge = _bridge(caller)

    await bridge.interrupt()
    await bridge.forward_outbound_delta(b"\x01\x02")

    # Nothing was playing, so nothing gets suppressed afterwards.
    assert caller.kinds == ["StopAudio", "AudioData"]


@pytest.mark.asyncio
async def test_interrupt_with_closed_socket_sends_nothing():
    caller = _Caller()
    bridge = _bridge(caller)
    bridge.begin_response()
    caller.open = False

    await bridge.interrupt()

    assert caller.messages == []


@pytest.mark.asyncio
async def test_closed_bridge_relays_nothing():
    caller = _Caller()
    send_to_ai = AsyncMock()
    bridge = _bridge(caller, send_to_ai)

    bridge.close()
    await bridge.forward_inbound(AudioFrame(payload=b"\x01", direction=FrameDirection.INBOUND))
    await bridge.forward_outbound_delta(b"\x01")

    assert caller.messages == []
    send_to_ai.assert_not_awaited()
    assert not bridge.is_live
