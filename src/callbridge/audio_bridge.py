"""
Audio relay between the call's media socket and the realtime AI session.

Inbound frames go to the AI as `input_audio_buffer.append` events; AI audio
deltas go back to the call wrapped in the ACS outbound envelope. When the
caller starts talking over the assistant, a StopAudio frame is written straight
to the socket so playback halts at once.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import structlog

from src.callbridge.acs_protocol import (
    AudioFrame,
    FrameDirection,
    create_audio_message,
    create_stop_audio_message,
)

logger = structlog.get_logger(__name__)


class AudioStreamingBridge:
    """
    Two one-directional relays plus barge-in for one call.

    `send_to_caller` writes a text frame to the media socket; `is_socket_open`
    reports whether that socket can still be written; `send_to_ai` queues an
    event on the realtime session.
    """

    def __init__(
        self,
        *,
        send_to_caller: Callable[[str], Awaitable[None]],
        is_socket_open: Callable[[], bool],
        send_to_ai: Callable[[dict[str, Any]], Awaitable[None]],
        call_id: str = "",
    ):
        self._send_to_caller = send_to_caller
        self._is_socket_open = is_socket_open
        self._send_to_ai = send_to_ai
        self.call_id = call_id

        self._response_active = False
        self._ignore_outbound = False
        self._closed = False

        self.inbound_frames = 0
        self.outbound_frames = 0
        self.dropped_frames = 0

    @property
    def is_live(self) -> bool:
        return not self._closed and self._is_socket_open()

    @property
    def is_playing(self) -> bool:
        """True while assistant audio for the current response is being relayed."""
        return self._response_active and not self._ignore_outbound

    def begin_response(self) -> None:
        self._response_active = True
        self._ignore_outbound = False

    def end_response(self) -> None:
        self._response_active = False

    def close(self) -> None:
        self._closed = True
        self._response_active = False

    async def forward_inbound(self, frame: AudioFrame) -> None:
        """Caller audio -> AI session. Best effort."""
        if self._closed or not frame.payload:
            return
        try:
            await self._send_to_ai(
                {
                    "type": "input_audio_buffer.append",
                    "audio": frame.payload_b64,
                }
            )
            self.inbound_frames += 1
        except Exception as e:
            self.dropped_frames += 1
            logger.warning("Failed to forward inbound audio", call_id=self.call_id, error=str(e))

    async def forward_outbound(self, frame: AudioFrame) -> None:
        """AI audio -> caller, only while the socket is open."""
        if self._closed or not frame.payload:
            return
        if self._ignore_outbound:
            self.dropped_frames += 1
            return
        if not self._is_socket_open():
            self.dropped_frames += 1
            logger.warning("Socket connection is not open; dropping outbound audio", call_id=self.call_id)
            return

        self._response_active = True
        try:
            await self._send_to_caller(create_audio_message(frame.payload))
            self.outbound_frames += 1
        except Exception as e:
            self.dropped_frames += 1
            logger.warning("Failed to send outbound audio", call_id=self.call_id, error=str(e))

    async def forward_outbound_delta(self, payload: bytes) -> None:
        await self.forward_outbound(AudioFrame(payload=payload, direction=FrameDirection.OUTBOUND))

    async def interrupt(self) -> None:
        """Caller barged in: stop playback now and drop the rest of this response."""
        was_playing = self.is_playing
        if self._response_active:
            self._ignore_outbound = True

        if self._closed or not self._is_socket_open():
            return

        try:
            await self._send_to_caller(create_stop_audio_message())
            logger.info("Stop audio sent", call_id=self.call_id, was_playing=was_playing)
        except Exception as e:
            logger.warning("Failed to send stop audio", call_id=self.call_id, error=str(e))
