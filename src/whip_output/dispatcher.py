"""Forward encoded frames onto their RTP tracks."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .host import EncodedPacket
from .session import Session, Track
from .transport import MediaKind, TransportEngine, TransportError

logger = logging.getLogger(__name__)

RTP_TIMESTAMP_MODULO = 1 << 32
USEC_PER_SECOND = 1_000_000


@dataclass(slots=True)
class RtpClock:
    """Map decode timestamps in microseconds onto a track's RTP clock.

    Elapsed ticks are measured from the first frame and truncated, so the
    per-frame advance never accumulates rounding drift.
    """

    clock_rate: int
    first_dts_usec: int | None = None
    last_ticks: int = 0

    def elapsed_ticks(self, dts_usec: int) -> int:
        if self.first_dts_usec is None:
            return 0
        return (dts_usec - self.first_dts_usec) * self.clock_rate // USEC_PER_SECOND

    def advance(self, dts_usec: int) -> int:
        """Return the number of ticks between the previous frame and ``dts_usec``."""

        if self.first_dts_usec is None:
            self.first_dts_usec = dts_usec
            self.last_ticks = 0
            return 0
        ticks = self.elapsed_ticks(dts_usec)
        delta = ticks - self.last_ticks
        self.last_ticks = ticks
        return delta


class MediaDispatcher:
    """Rebase and send frames for one session's audio and video tracks."""

    def __init__(self, engine: TransportEngine, session: Session) -> None:
        self._engine = engine
        self._session = session
        self._clocks: dict[MediaKind, RtpClock] = {}
        for track in (session.audio_track, session.video_track):
            if track is not None:
                self._clocks[track.kind] = RtpClock(track.clock_rate)

    def _track_for(self, kind: MediaKind) -> Track | None:
        if kind is MediaKind.AUDIO:
            return self._session.audio_track
        if kind is MediaKind.VIDEO:
            return self._session.video_track
        return None

    def dispatch(self, packet: EncodedPacket) -> bool:
        """Send ``packet`` on its track, returning ``True`` when it was sent."""

        track = self._track_for(packet.kind)
        clock = self._clocks.get(packet.kind)
        if track is None or clock is None:
            return False

        delta = clock.advance(packet.dts_usec)
        try:
            current = self._engine.get_track_timestamp(track.handle)
            self._engine.set_track_timestamp(
                track.handle, (current + delta) % RTP_TIMESTAMP_MODULO
            )
            self._engine.send(track.handle, packet.data)
        except TransportError as exc:
            logger.debug("Dropping %s frame: %s", packet.kind.value, exc)
            return False

        self._session.total_bytes_sent.add(packet.size)
        if packet.kind is MediaKind.AUDIO:
            self._session.last_audio_timestamp = packet.dts_usec
        else:
            self._session.last_video_timestamp = packet.dts_usec
        return True


__all__ = ["MediaDispatcher", "RtpClock"]
