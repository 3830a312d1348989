"""Types exchanged with the media framework that drives an output."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .transport import MediaKind


class StopCode(str, Enum):
    """Terminal statuses reported to the host."""

    SUCCESS = "success"
    BAD_PATH = "bad_path"
    CONNECT_FAILED = "connect_failed"
    INVALID_STREAM = "invalid_stream"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    ENCODE_ERROR = "encode_error"


@dataclass(frozen=True, slots=True)
class EncodedPacket:
    """An encoded audio or video frame delivered by the host."""

    kind: MediaKind
    data: bytes
    dts_usec: int
    keyframe: bool = False

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class ServiceInfo:
    """Connection details for the ingestion endpoint."""

    endpoint_url: str
    bearer_token: str | None = None


class OutputHost(Protocol):
    """Callbacks an output uses to talk to its host framework."""

    def can_begin_data_capture(self) -> bool:
        ...

    def initialize_encoders(self) -> bool:
        ...

    def begin_data_capture(self) -> None:
        ...

    def get_service(self) -> ServiceInfo | None:
        ...

    def get_video_extradata(self) -> bytes | None:
        """Return the encoder's raw parameter set bitstream, if any."""

    def signal_stop(self, code: StopCode) -> None:
        ...


__all__ = ["EncodedPacket", "MediaKind", "OutputHost", "ServiceInfo", "StopCode"]
