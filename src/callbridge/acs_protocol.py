"""
Azure Communication Services media streaming protocol.

ACS sends JSON text messages on the media websocket:
- AudioMetadata: stream settings (encoding, sample rate, channels)
- AudioData: base64 PCM audio from a participant
- DtmfData: DTMF tone detected

Outbound (bidirectional streaming):
- AudioData: base64 PCM audio to play to the call
- StopAudio: drop whatever is buffered for playback (barge-in)

Raw binary frames are accepted as well and treated as audio.
"""

import base64
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

ACS_SAMPLE_RATE = 24000


class FrameDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


@dataclass(frozen=True)
class AudioFrame:
    """Opaque audio payload travelling in one direction."""
    payload: bytes
    direction: FrameDirection

    @property
    def payload_b64(self) -> str:
        return base64.b64encode(self.payload).decode("utf-8")


class AcsEventKind(str, Enum):
    """ACS media streaming message kinds."""
    AUDIO_METADATA = "AudioMetadata"
    AUDIO_DATA = "AudioData"
    DTMF_DATA = "DtmfData"
    STOP_AUDIO = "StopAudio"


@dataclass
class AudioMetadataEvent:
    """Parsed AudioMetadata message."""
    subscription_id: str
    encoding: str
    sample_rate: int
    channels: int
    length: int

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "AudioMetadataEvent":
        metadata = _get_ci(message, "audioMetadata") or {}
        return cls(
            subscription_id=str(_get_ci(metadata, "subscriptionId") or ""),
            encoding=str(_get_ci(metadata, "encoding") or ""),
            sample_rate=int(_get_ci(metadata, "sampleRate") or ACS_SAMPLE_RATE),
            channels=int(_get_ci(metadata, "channels") or 1),
            length=int(_get_ci(metadata, "length") or 0),
        )


@dataclass
class AudioDataEvent:
    """Parsed AudioData message."""
    data: bytes
    timestamp: str = ""
    participant_raw_id: str = ""
    silent: bool = False

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "AudioDataEvent":
        audio = _get_ci(message, "audioData") or {}
        try:
            data = base64.b64decode(_get_ci(audio, "data") or "")
        except Exception:
            data = b""
        return cls(
            data=data,
            timestamp=str(_get_ci(audio, "timestamp") or ""),
            participant_raw_id=str(_get_ci(audio, "participantRawID") or ""),
            silent=bool(_get_ci(audio, "silent")),
        )

    def to_frame(self) -> AudioFrame:
        return AudioFrame(payload=self.data, direction=FrameDirection.INBOUND)


@dataclass
class DtmfDataEvent:
    """Parsed DtmfData message."""
    data: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "DtmfDataEvent":
        dtmf = _get_ci(message, "dtmfData") or {}
        return cls(data=str(_get_ci(dtmf, "data") or ""))


def _get_ci(mapping: Any, key: str) -> Any:
    """Case-insensitive lookup; ACS uses camelCase inbound and PascalCase in samples."""
    if not isinstance(mapping, dict):
        return None
    if key in mapping:
        return mapping[key]
    lowered = key.lower()
    for k, v in mapping.items():
        if isinstance(k, str) and k.lower() == lowered:
            return v
    return None


def parse_acs_message(raw_message: Union[str, bytes]) -> tuple[AcsEventKind, Any]:
    """
    Parse a raw ACS websocket message.

    Returns:
        Tuple of (event_kind, parsed_event)

    Raises:
        ValueError: If the message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Message is not a JSON object")

    kind_str = str(_get_ci(message, "kind") or "")
    try:
        kind = AcsEventKind(kind_str)
    except ValueError:
        raise ValueError(f"Unknown message kind: {kind_str}")

    if kind == AcsEventKind.AUDIO_METADATA:
        return kind, AudioMetadataEvent.from_message(message)
    if kind == AcsEventKind.AUDIO_DATA:
        return kind, AudioDataEvent.from_message(message)
    if kind == AcsEventKind.DTMF_DATA:
        return kind, DtmfDataEvent.from_message(message)
    return kind, message


def frame_from_transport(raw_message: Union[str, bytes]) -> Optional[AudioFrame]:
    """
    Extract an inbound audio frame from a transport message.

    JSON messages carry AudioData envelopes; anything that is not JSON is taken
    as a raw binary audio frame. Silent or non-audio messages yield None.
    """
    if isinstance(raw_message, (bytes, bytearray)):
        stripped = bytes(raw_message).lstrip()
        if not stripped.startswith(b"{"):
            return AudioFrame(payload=bytes(raw_message), direction=FrameDirection.INBOUND) if raw_message else None

    kind, event = parse_acs_message(raw_message)
    if kind == AcsEventKind.AUDIO_DATA and event.data and not event.silent:
        return event.to_frame()
    if kind == AcsEventKind.AUDIO_METADATA:
        logger.info(
            "Media stream metadata",
            encoding=event.encoding,
            sample_rate=event.sample_rate,
            channels=event.channels,
        )
    return None


def create_audio_message(audio_payload: bytes) -> str:
    """
    Create an outbound AudioData message.

    Args:
        audio_payload: Raw PCM16 audio bytes

    Returns:
        JSON string to send to ACS
    """
    message = {
        "kind": AcsEventKind.AUDIO_DATA.value,
        "audioData": {"data": base64.b64encode(audio_payload).decode("utf-8")},
        "stopAudio": None,
    }
    return encoder.encode(message).decode("utf-8")


def create_stop_audio_message() -> str:
    """
    Create an outbound StopAudio message.

    Clears any audio ACS has buffered for playback, used for interruption.
    """
    message = {
        "kind": AcsEventKind.STOP_AUDIO.value,
        "audioData": None,
        "stopAudio": {},
    }
    return encoder.encode(message).decode("utf-8")
