"""
Azure OpenAI Realtime (speech-to-speech) conversation for one call.

ACS (PCM16 24kHz) -> OpenAI Realtime -> ACS (PCM16 24kHz)

The conversation owns its websocket, a send queue so the media socket reader
never blocks on AI backpressure, and a receive loop that turns the typed event
stream into handler callbacks.
"""

from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import structlog
import websockets

from src.callbridge.config import Config, get_config

logger = structlog.get_logger(__name__)


class ConversationState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Utterance:
    """A finalized caller transcript."""
    text: str
    sequence: int


class RealtimeEventHandler(Protocol):
    async def on_audio_delta(self, payload: bytes) -> None: ...

    async def on_speech_started(self) -> None: ...

    async def on_response_created(self) -> None: ...

    async def on_response_done(self, status: str) -> None: ...

    async def on_utterance(self, utterance: Utterance) -> None: ...


def _b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data)
    except Exception:
        return b""


class RealtimeConversation:
    """
    One realtime AI session, owned by exactly one call session.

    Lifecycle: `start()` connects and sends the session configuration; the
    greeting goes out once the service acknowledges with `session.created`;
    `stop()` tears everything down.
    """

    def __init__(
        self,
        handler: RealtimeEventHandler,
        *,
        config: Optional[Config] = None,
        call_id: str = "",
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.config = config or get_config()
        self.call_id = call_id
        self._handler = handler
        self._connect = connect or websockets.connect

        self._state = ConversationState.IDLE
        self._ws: Optional[Any] = None
        self._send_queue: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=2000)
        self._send_task: Optional[asyncio.Task] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._session_created = asyncio.Event()

        self._utterance_sequence = 0
        self.session_id: Optional[str] = None

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state in (ConversationState.CONNECTING, ConversationState.ACTIVE)

    def session_config(self) -> dict[str, Any]:
        return {
            "type": "session.update",
            "session": {
                "instructions": self.config.realtime_instructions,
                "voice": self.config.realtime_voice,
                "input_audio_format": "pcm16",
                "output_audio_format": "pcm16",
                "turn_detection": {"type": "server_vad"},
                "input_audio_transcription": {"model": self.config.realtime_transcription_model},
            },
        }

    async def start(self) -> None:
        if self.is_running:
            return

        api_key = (self.config.azure_openai_key or "").strip()
        if not api_key or not self.config.azure_openai_endpoint or not self.config.azure_openai_realtime_deployment:
            raise RuntimeError(
                "Realtime conversation requires AZURE_OPENAI_SERVICE_ENDPOINT, "
                "AZURE_OPENAI_SERVICE_KEY and AZURE_OPENAI_DEPLOYMENT_MODEL_NAME"
            )

        self._state = ConversationState.CONNECTING
        self._ws = await self._connect(
            self.config.realtime_url,
            additional_headers={"api-key": api_key},
            open_timeout=10,
        )

        self._send_task = asyncio.create_task(self._send_loop())
        self._recv_task = asyncio.create_task(self._receive_loop())

        logger.info("Sending session config", call_id=self.call_id)
        await self.send(self.session_config())

        logger.info(
            "Realtime conversation connected",
            call_id=self.call_id,
            deployment=self.config.azure_openai_realtime_deployment,
            voice=self.config.realtime_voice,
        )

    async def wait_until_ready(self) -> None:
        """Block until the service acknowledges the session."""
        await self._session_created.wait()

    async def stop(self) -> None:
        if self._state == ConversationState.STOPPED:
            return
        self._state = ConversationState.STOPPED

        # Unblock the send loop
        try:
            self._send_queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

        current = asyncio.current_task()
        tasks = [t for t in (self._send_task, self._recv_task) if t and t is not current]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug("Realtime socket close failed", call_id=self.call_id, error=str(e))

        self._ws = None
        self._send_task = None
        self._recv_task = None
        logger.info("Realtime conversation stopped", call_id=self.call_id)

    async def send(self, message: dict[str, Any]) -> None:
        if not self.is_running:
            return

        # Avoid blocking the media socket reader on AI backpressure.
        try:
            self._send_queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Realtime send queue full; dropping event", call_id=self.call_id, type=message.get("type"))

    async def send_greeting(self) -> None:
        await self.send(
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "text", "text": self.config.greeting_message}],
                },
            }
        )

    async def inject_context(self, context: str) -> None:
        """Ground the next response with retrieved facts."""
        await self.send(
            {
                "type": "conversation.item.create",
                "item": {
                    "type": "message",
                    "role": "system",
                    "content": [
                        {
                            "type": "input_text",
                            "text": f"Here is relevant information from the database: {context}",
                        }
                    ],
                },
            }
        )

    async def _send_loop(self) -> None:
        ws = self._ws
        if not ws:
            return

        try:
            while self.is_running:
                item = await self._send_queue.get()
                if item is None:
                    break
                try:
                    await ws.send(json.dumps(item))
                except Exception as e:
                    logger.error("Realtime send failed", call_id=self.call_id, error=str(e), type=item.get("type"))
                    break
        except asyncio.CancelledError:
            pass

    async def _receive_loop(self) -> None:
        ws = self._ws
        if not ws:
            return

        try:
            async for raw in ws:
                if not self.is_running:
                    break
                try:
                    event = json.loads(raw)
                except ValueError:
                    logger.warning("Unparseable realtime event", call_id=self.call_id)
                    continue
                if not isinstance(event, dict):
                    continue
                try:
                    await self.dispatch(event)
                except Exception as e:
                    logger.error(
                        "Realtime event handling failed",
                        call_id=self.call_id,
                        type=event.get("type"),
                        error=str(e),
                    )
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Realtime receive loop failed", call_id=self.call_id, error=str(e))

    async def dispatch(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")

        if event_type == "session.created":
            self.session_id = (event.get("session") or {}).get("id")
            self._state = ConversationState.ACTIVE
            self._session_created.set()
            logger.info("Realtime session started", call_id=self.call_id, session_id=self.session_id)
            await self.send_greeting()
            return

        if event_type == "error":
            logger.error("Realtime error", call_id=self.call_id, details=event.get("error") or event)
            return

        if event_type == "response.created":
            await self._handler.on_response_created()
            return

        if event_type in ("response.audio.delta", "response.output_audio.delta"):
            delta = event.get("delta")
            if isinstance(delta, str) and delta:
                await self._handler.on_audio_delta(_b64decode(delta))
            return

        if event_type == "input_audio_buffer.speech_started":
            logger.info(
                "Voice activity detection started",
                call_id=self.call_id,
                audio_start_ms=event.get("audio_start_ms"),
            )
            await self._handler.on_speech_started()
            return

        if event_type == "conversation.item.input_audio_transcription.completed":
            transcript = (event.get("transcript") or "").strip()
            logger.info("User transcript", call_id=self.call_id, text=transcript[:200])
            if transcript:
                self._utterance_sequence += 1
                await self._handler.on_utterance(Utterance(text=transcript, sequence=self._utterance_sequence))
            return

        if event_type == "response.audio_transcript.done":
            logger.info("AI transcript", call_id=self.call_id, text=str(event.get("transcript") or "")[:200])
            return

        if event_type == "response.done":
            status = str((event.get("response") or {}).get("status") or "")
            logger.info("Response done", call_id=self.call_id, status=status)
            await self._handler.on_response_done(status)
            return

        # response.audio_transcript.delta and the rest need no action.
