"""State carried by a single publishing attempt."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum

from .host import StopCode
from .transport import Codec, MediaKind, SessionHandle, TrackHandle


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


ACTIVE_STATES: frozenset[SessionState] = frozenset(
    {SessionState.STARTING, SessionState.CONNECTING, SessionState.CONNECTED}
)
"""States in which a further start request is rejected."""


class AtomicCounter:
    """Integer value that can be updated and read from several threads."""

    __slots__ = ("_value", "_lock")

    def __init__(self, value: int = 0) -> None:
        self._value = int(value)
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def add(self, amount: int) -> int:
        with self._lock:
            self._value += int(amount)
            return self._value

    def set(self, value: int) -> None:
        with self._lock:
            self._value = int(value)

    def reset(self) -> None:
        self.set(0)


@dataclass(slots=True)
class Track:
    """A configured outbound media track."""

    kind: MediaKind
    codec: Codec
    clock_rate: int
    payload_type: int
    ssrc: int
    mid: str
    track_id: str
    rtp_timestamp_base: int
    handle: TrackHandle


@dataclass(eq=False)
class Session:
    """Everything owned by one Start/Stop cycle."""

    endpoint_url: str = ""
    bearer_token: str | None = None
    resource_url: str = ""
    state: SessionState = SessionState.IDLE
    transport_handle: SessionHandle | None = None
    audio_track: Track | None = None
    video_track: Track | None = None
    sprop_parameter_sets: str = ""
    total_bytes_sent: AtomicCounter = field(default_factory=AtomicCounter)
    connect_time_ms: AtomicCounter = field(default_factory=AtomicCounter)
    start_time_ns: int = 0
    last_audio_timestamp: int = 0
    last_video_timestamp: int = 0
    accepting_frames: bool = False
    transport_created: bool = False
    reported_status: StopCode | None = None
    teardown_attempted: bool = False

    def mark_connecting(self, now_ns: int) -> None:
        if self.start_time_ns == 0:
            self.start_time_ns = now_ns
        self.state = SessionState.CONNECTING

    def mark_connected(self, now_ns: int) -> int:
        elapsed_ms = max(0, int((now_ns - self.start_time_ns) / 1_000_000))
        self.connect_time_ms.set(elapsed_ms)
        self.state = SessionState.CONNECTED
        return elapsed_ms

    def clear_tracks(self) -> None:
        self.audio_track = None
        self.video_track = None

    def reset_counters(self) -> None:
        self.total_bytes_sent.reset()
        self.connect_time_ms.reset()
        self.start_time_ns = 0
        self.last_audio_timestamp = 0
        self.last_video_timestamp = 0


__all__ = [
    "ACTIVE_STATES",
    "AtomicCounter",
    "Session",
    "SessionState",
    "Track",
]
