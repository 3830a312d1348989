"""Contract between the output controller and a real-time transport engine."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol


class TransportError(RuntimeError):
    """Raised when the transport engine cannot complete an operation."""


class PeerState(str, Enum):
    """Connection states reported by a transport session."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class MediaKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


class Codec(str, Enum):
    OPUS = "opus"
    H264 = "h264"


class Direction(str, Enum):
    SENDONLY = "sendonly"
    RECVONLY = "recvonly"
    SENDRECV = "sendrecv"


class NalSeparator(str, Enum):
    """How access units handed to a packetizer delimit their NAL units."""

    LENGTH = "length"
    START_SEQUENCE = "start-sequence"


@dataclass(frozen=True, slots=True)
class SessionHandle:
    """Opaque reference to a peer session issued by an engine."""

    id: int


@dataclass(frozen=True, slots=True)
class TrackHandle:
    """Opaque reference to a track belonging to a peer session."""

    session_id: int
    id: int


@dataclass(frozen=True, slots=True)
class TrackInit:
    """Parameters used to add a track to a peer session."""

    direction: Direction
    codec: Codec
    payload_type: int
    ssrc: int
    mid: str
    cname: str
    msid: str
    track_id: str

    @property
    def kind(self) -> MediaKind:
        return MediaKind.AUDIO if self.codec is Codec.OPUS else MediaKind.VIDEO


@dataclass(frozen=True, slots=True)
class PacketizerInit:
    """Parameters used to attach an RTP packetizer to a track."""

    ssrc: int
    cname: str
    payload_type: int
    clock_rate: int
    sequence_number: int
    timestamp: int
    nal_separator: NalSeparator = NalSeparator.LENGTH
    max_fragment_size: int = 0
    sender_reports: bool = True
    nack_buffer: int = 0


StateListener = Callable[[PeerState], None]


class TransportEngine(Protocol):
    """Capabilities the output controller consumes from a transport engine.

    Engines may invoke state listeners from any thread.
    """

    def create_session(self) -> SessionHandle:
        ...

    async def delete_session(self, session: SessionHandle) -> None:
        """Destroy ``session``; deleting an unknown handle is a no-op."""

    def on_state_change(self, session: SessionHandle, listener: StateListener) -> None:
        ...

    def add_track(self, session: SessionHandle, init: TrackInit) -> TrackHandle:
        ...

    def set_packetizer(self, track: TrackHandle, init: PacketizerInit) -> None:
        ...

    async def set_local_description(self, session: SessionHandle, sdp_type: str = "offer") -> None:
        ...

    def get_local_description(self, session: SessionHandle) -> str:
        ...

    async def set_remote_description(
        self, session: SessionHandle, sdp: str, sdp_type: str = "answer"
    ) -> None:
        ...

    def get_track_timestamp(self, track: TrackHandle) -> int:
        ...

    def set_track_timestamp(self, track: TrackHandle, timestamp: int) -> None:
        ...

    def send(self, track: TrackHandle, payload: bytes) -> None:
        ...


__all__ = [
    "Codec",
    "Direction",
    "MediaKind",
    "NalSeparator",
    "PacketizerInit",
    "PeerState",
    "SessionHandle",
    "StateListener",
    "TrackHandle",
    "TrackInit",
    "TransportEngine",
    "TransportError",
]
