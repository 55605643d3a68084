"""
Call session state machine and manager.

One CallSession per phone call:

    RINGING -> ANSWERED -> CONNECTED -> DISCONNECTED

Streaming is not a stored state: a session is streaming while its media socket
is attached and its audio bridge is live. The manager owns the registry of
active sessions and drives the telephony client (answer, properties lookup).
"""

from __future__ import annotations

import asyncio
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, Union
from urllib.parse import quote

import structlog
from azure.communication.callautomation import (
    AudioFormat,
    MediaStreamingAudioChannelType,
    MediaStreamingContentType,
    MediaStreamingOptions,
    StreamingTransportType,
)
from starlette.websockets import WebSocketState

from src.callbridge.acs_protocol import frame_from_transport
from src.callbridge.audio_bridge import AudioStreamingBridge
from src.callbridge.config import Config, get_config
from src.callbridge.context_store import ConversationContextStore
from src.callbridge.db import DataAccessLayer
from src.callbridge.grounding import GroundingService
from src.callbridge.rag import RetrievalPipeline
from src.callbridge.realtime import RealtimeConversation, Utterance

logger = structlog.get_logger(__name__)


class CallState(str, Enum):
    RINGING = "ringing"
    ANSWERED = "answered"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


ALLOWED_TRANSITIONS: Dict[CallState, frozenset] = {
    CallState.RINGING: frozenset({CallState.ANSWERED, CallState.DISCONNECTED}),
    CallState.ANSWERED: frozenset({CallState.CONNECTED, CallState.DISCONNECTED}),
    CallState.CONNECTED: frozenset({CallState.DISCONNECTED}),
    CallState.DISCONNECTED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a lifecycle event does not fit the session's state."""
    pass


class UnknownSessionError(Exception):
    """Raised when a media socket names a context id we never answered."""
    pass


class SessionUnavailableError(Exception):
    """Raised when new calls arrive while the server is shutting down."""
    pass


def socket_is_open(socket: Any) -> bool:
    if socket is None:
        return False
    return (
        getattr(socket, "client_state", None) == WebSocketState.CONNECTED
        and getattr(socket, "application_state", None) == WebSocketState.CONNECTED
    )


class CallSession:
    """
    State for one phone call.

    Owns the media socket, the realtime conversation, the audio bridge and its
    own retrieval context. Implements the realtime event handler interface.
    """

    def __init__(self, context_id: str, caller_id: str = "", *, context_capacity: int = 10):
        self.context_id = context_id
        self.caller_id = caller_id
        self.call_connection_id: str = ""
        self.state = CallState.RINGING
        self.created_at = time.time()

        self.context_store = ConversationContextStore(context_capacity)
        self.socket: Optional[Any] = None
        self.conversation: Optional[RealtimeConversation] = None
        self.bridge: Optional[AudioStreamingBridge] = None
        self.pipeline: Optional[RetrievalPipeline] = None

        self._retrieval_task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return (
            f"CallSession(context_id={self.context_id!r}, "
            f"call_connection_id={self.call_connection_id!r}, state={self.state.value})"
        )

    def transition(self, new_state: CallState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"{self.state.value} -> {new_state.value}")
        logger.info(
            "Call state transition",
            context_id=self.context_id,
            from_state=self.state.value,
            to_state=new_state.value,
        )
        self.state = new_state

    @property
    def is_socket_open(self) -> bool:
        return socket_is_open(self.socket)

    @property
    def is_streaming(self) -> bool:
        return self.bridge is not None and self.bridge.is_live

    @property
    def retrieval_in_flight(self) -> bool:
        return self._retrieval_task is not None and not self._retrieval_task.done()

    async def send_to_caller(self, message: str) -> None:
        if self.socket is None:
            return
        await self.socket.send_text(message)

    async def handle_transport_message(self, raw_message: Union[str, bytes]) -> None:
        """Relay one media socket message; bad messages are logged and skipped."""
        if self.bridge is None:
            return
        try:
            frame = frame_from_transport(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse media message", context_id=self.context_id, error=str(e))
            return
        if frame is not None:
            await self.bridge.forward_inbound(frame)

    # Realtime event handler

    async def on_audio_delta(self, payload: bytes) -> None:
        if self.bridge is not None:
            await self.bridge.forward_outbound_delta(payload)

    async def on_speech_started(self) -> None:
        if self.bridge is not None:
            await self.bridge.interrupt()

    async def on_response_created(self) -> None:
        if self.bridge is not None:
            self.bridge.begin_response()

    async def on_response_done(self, status: str) -> None:
        if self.bridge is not None:
            self.bridge.end_response()

    async def on_utterance(self, utterance: Utterance) -> None:
        if self.pipeline is None:
            return
        if self.retrieval_in_flight:
            logger.info(
                "Retrieval in flight; ignoring utterance",
                context_id=self.context_id,
                sequence=utterance.sequence,
            )
            return
        # Run off the receive loop so audio keeps flowing while we query.
        self._retrieval_task = asyncio.create_task(self._ground_utterance(utterance))

    async def _ground_utterance(self, utterance: Utterance) -> None:
        answer = await self.pipeline.answer(utterance.text)
        if not answer.has_information:
            logger.info("No grounding context for utterance", context_id=self.context_id, sequence=utterance.sequence)
            return

        logger.info(
            "Grounding context ready",
            context_id=self.context_id,
            sequence=utterance.sequence,
            source=answer.source,
            context=answer.context[:200],
        )
        conversation = self.conversation
        if conversation is None or not conversation.is_running:
            return
        try:
            await conversation.inject_context(answer.context)
        except Exception as e:
            logger.error("Failed to inject grounding context", context_id=self.context_id, error=str(e))

    async def close_media(self, code: int = 1000, reason: str = "Call disconnected") -> None:
        """Stop the conversation and close the media socket if still open."""
        if self._retrieval_task and not self._retrieval_task.done():
            self._retrieval_task.cancel()
            await asyncio.gather(self._retrieval_task, return_exceptions=True)

        if self.bridge is not None:
            self.bridge.close()

        if self.conversation is not None:
            try:
                await self.conversation.stop()
            except Exception as e:
                logger.warning("Error stopping conversation", context_id=self.context_id, error=str(e))

        socket = self.socket
        if socket is not None and socket_is_open(socket):
            try:
                await socket.close(code=code, reason=reason)
            except Exception as e:
                logger.warning("Error closing media socket", context_id=self.context_id, error=str(e))


class SessionRegistry:
    """Active sessions keyed by context id; mutations are serialized."""

    def __init__(self):
        self._sessions: Dict[str, CallSession] = {}
        self._lock = asyncio.Lock()

    async def add(self, session: CallSession) -> None:
        async with self._lock:
            self._sessions[session.context_id] = session

    def get(self, context_id: str) -> Optional[CallSession]:
        return self._sessions.get(context_id)

    def find(self, call_connection_id: Optional[str] = None, context_id: Optional[str] = None) -> Optional[CallSession]:
        for session in self._sessions.values():
            if call_connection_id and session.call_connection_id == call_connection_id:
                return session
            if context_id and session.context_id == context_id:
                return session
        return None

    async def pop(
        self,
        call_connection_id: Optional[str] = None,
        context_id: Optional[str] = None,
        *,
        media_socket: Optional[Any] = None,
    ) -> Optional[CallSession]:
        """Remove and return the matching session; with `media_socket`, only if it owns that socket."""
        async with self._lock:
            session = self.find(call_connection_id, context_id)
            if session is None:
                return None
            if media_socket is not None and session.socket is not media_socket:
                return None
            del self._sessions[session.context_id]
            return session

    async def pop_all(self) -> list[CallSession]:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            return sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[CallSession]:
        return iter(list(self._sessions.values()))


class CallSessionManager:
    """
    Drives call lifecycle events for all active calls.

    `call_client` is an async ACS CallAutomationClient (or anything with the
    same `answer_call` / `get_call_connection` surface).
    """

    def __init__(
        self,
        call_client: Any,
        data_access: DataAccessLayer,
        grounding: GroundingService,
        *,
        config: Optional[Config] = None,
        conversation_factory: Callable[..., RealtimeConversation] = RealtimeConversation,
    ):
        self.config = config or get_config()
        self.call_client = call_client
        self.data_access = data_access
        self.grounding = grounding
        self.registry = SessionRegistry()
        self._conversation_factory = conversation_factory
        self._accepting = True

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def active_sessions(self) -> int:
        return len(self.registry)

    def callback_url(self, context_id: str, caller_id: str) -> str:
        return f"{self.config.base_url}/api/callbacks/{context_id}?callerId={quote(caller_id, safe='')}"

    def media_socket_url(self, context_id: str) -> str:
        return f"{self.config.ws_url}/ws/{context_id}"

    def media_streaming_options(self, context_id: str) -> MediaStreamingOptions:
        return MediaStreamingOptions(
            transport_url=self.media_socket_url(context_id),
            transport_type=StreamingTransportType.WEBSOCKET,
            content_type=MediaStreamingContentType.AUDIO,
            audio_channel_type=MediaStreamingAudioChannelType.UNMIXED,
            start_media_streaming=True,
            enable_bidirectional=True,
            audio_format=AudioFormat.PCM24_K_MONO,
        )

    async def handle_incoming_call(self, incoming_call_context: str, caller_id: str) -> CallSession:
        """RINGING -> ANSWERED: answer with per-call callback and media URLs."""
        if not self._accepting:
            raise SessionUnavailableError("Server is shutting down")

        session = CallSession(
            uuid.uuid4().hex,
            caller_id,
            context_capacity=self.config.context_history_size,
        )
        await self.registry.add(session)

        logger.info("Answering incoming call", caller_id=caller_id, context_id=session.context_id)
        try:
            result = await self.call_client.answer_call(
                incoming_call_context=incoming_call_context,
                callback_url=self.callback_url(session.context_id, caller_id),
                media_streaming=self.media_streaming_options(session.context_id),
            )
        except Exception:
            await self.registry.pop(context_id=session.context_id)
            raise

        session.call_connection_id = getattr(result, "call_connection_id", "") or ""
        session.transition(CallState.ANSWERED)
        logger.info(
            "Call answered successfully",
            context_id=session.context_id,
            call_connection_id=session.call_connection_id,
        )
        return session

    async def handle_call_connected(self, call_connection_id: str, context_id: Optional[str] = None) -> None:
        """ANSWERED -> CONNECTED: confirm and log connection properties."""
        session = self.registry.find(call_connection_id, context_id)
        if session is None:
            logger.warning("Connected event for unknown call", call_connection_id=call_connection_id)
            return

        try:
            properties = await self.call_client.get_call_connection(call_connection_id).get_call_properties()
            logger.info(
                "Call connected successfully",
                call_connection_id=call_connection_id,
                media_streaming_subscription=str(getattr(properties, "media_streaming_subscription", None)),
            )
        except Exception as e:
            logger.error("Error fetching call properties", call_connection_id=call_connection_id, error=str(e))

        try:
            session.transition(CallState.CONNECTED)
        except InvalidTransitionError as e:
            logger.warning("Ignoring connected event", call_connection_id=call_connection_id, reason=str(e))

    async def attach_media_socket(self, context_id: str, socket: Any) -> CallSession:
        """Start streaming: conversation, bridge and retrieval for the call's media socket."""
        session = self.registry.get(context_id)
        if session is None:
            raise UnknownSessionError(context_id)
        if session.socket is not None:
            raise InvalidTransitionError(f"media socket already attached for {context_id}")

        session.socket = socket
        session.pipeline = RetrievalPipeline(
            self.data_access,
            self.grounding,
            session.context_store,
            config=self.config,
        )
        session.conversation = self._conversation_factory(
            session,
            config=self.config,
            call_id=session.context_id,
        )
        session.bridge = AudioStreamingBridge(
            send_to_caller=session.send_to_caller,
            is_socket_open=lambda: session.is_socket_open,
            send_to_ai=session.conversation.send,
            call_id=session.context_id,
        )

        await session.conversation.start()
        await session.conversation.wait_until_ready()
        logger.info("Media streaming attached", context_id=context_id, state=session.state.value)
        return session

    async def handle_call_disconnected(
        self,
        call_connection_id: Optional[str] = None,
        context_id: Optional[str] = None,
        *,
        media_socket: Optional[Any] = None,
    ) -> bool:
        """
        Any state -> DISCONNECTED. Returns False when there was nothing to do.

        A closing media socket passes itself as `media_socket`; the call is only
        torn down when that socket is the one attached to it.
        """
        session = await self.registry.pop(call_connection_id, context_id, media_socket=media_socket)
        if session is None:
            logger.debug(
                "Disconnect for unknown, removed or not owned call",
                call_connection_id=call_connection_id,
                context_id=context_id,
                from_socket=media_socket is not None,
            )
            return False

        session.transition(CallState.DISCONNECTED)
        await session.close_media()
        logger.info(
            "Cleaned up resources for call",
            context_id=session.context_id,
            call_connection_id=session.call_connection_id,
        )
        return True

    async def close_all(self, code: int = 1001, reason: str = "Server shutting down") -> None:
        """Refuse new calls and close every open media socket."""
        self._accepting = False
        sessions = await self.registry.pop_all()
        for session in sessions:
            session.transition(CallState.DISCONNECTED)
            await session.close_media(code=code, reason=reason)
        logger.info("Closed all call sessions", count=len(sessions))
