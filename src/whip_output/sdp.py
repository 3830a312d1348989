"""Local offer construction for WHIP publishing sessions."""
from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass

from .session import Track
from .transport import (
    Codec,
    Direction,
    NalSeparator,
    PacketizerInit,
    SessionHandle,
    TrackInit,
    TransportEngine,
)

logger = logging.getLogger(__name__)

IDENTIFIER_LENGTH = 16
IDENTIFIER_ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase

AUDIO_MID = "0"
AUDIO_CLOCK_RATE = 48000
AUDIO_PAYLOAD_TYPE = 111

VIDEO_MID = "1"
VIDEO_CLOCK_RATE = 90000
VIDEO_PAYLOAD_TYPE = 96

# Keep video fragments under a 1500 byte path MTU once RTP, SRTP and UDP
# overheads are added. Usable range is roughly 576-1470.
MAX_FRAGMENT_SIZE = 1180
NACK_BUFFER_PACKETS = 1000

NON_STANDARD_GROUP_LINE = "a=group:LS 0 1"
PACKETIZATION_TOKEN = "packetization"


def generate_identifier(length: int = IDENTIFIER_LENGTH) -> str:
    """Return a random identifier drawn uniformly from ``[0-9A-Za-z]``."""

    return "".join(secrets.choice(IDENTIFIER_ALPHABET) for _ in range(length))


def random_u32() -> int:
    return secrets.randbits(32)


@dataclass(frozen=True, slots=True)
class StreamIdentity:
    """Identifiers shared by every track of one session."""

    media_stream_id: str
    cname: str

    @classmethod
    def generate(cls) -> "StreamIdentity":
        return cls(media_stream_id=generate_identifier(), cname=generate_identifier())


@dataclass(frozen=True, slots=True)
class LocalOffer:
    """Result of building the local session description."""

    sdp: str
    audio_track: Track
    video_track: Track
    identity: StreamIdentity


def splice_parameter_sets(sdp: str, sprop_parameter_sets: str) -> str:
    """Embed ``sprop_parameter_sets`` into the video section of ``sdp``.

    Any ``a=group:LS 0 1`` line is removed and the parameter string is inserted
    immediately before the ``packetization`` token of the video media section.
    The offer is returned without insertion when no such token exists.
    """

    if not sprop_parameter_sets:
        return sdp

    lines = sdp.splitlines(keepends=True)
    munged = "".join(
        line for line in lines if line.rstrip("\r\n") != NON_STANDARD_GROUP_LINE
    )

    section_start = munged.find("m=video")
    if section_start < 0:
        logger.warning("Offer has no video section; parameter sets not embedded")
        return munged
    section_end = munged.find("\nm=", section_start)
    if section_end < 0:
        section_end = len(munged)

    index = munged.rfind(PACKETIZATION_TOKEN, section_start, section_end)
    if index < 0:
        logger.warning("Video section has no packetization attribute; parameter sets not embedded")
        return munged
    return munged[:index] + sprop_parameter_sets + munged[index:]


class OfferBuilder:
    """Configure audio/video tracks on a transport session and build its offer."""

    def __init__(
        self,
        engine: TransportEngine,
        *,
        audio_payload_type: int = AUDIO_PAYLOAD_TYPE,
        video_payload_type: int = VIDEO_PAYLOAD_TYPE,
        max_fragment_size: int = MAX_FRAGMENT_SIZE,
        nack_buffer: int = NACK_BUFFER_PACKETS,
    ) -> None:
        self._engine = engine
        self._audio_payload_type = audio_payload_type
        self._video_payload_type = video_payload_type
        self._max_fragment_size = max_fragment_size
        self._nack_buffer = nack_buffer

    def configure_audio_track(
        self, session: SessionHandle, identity: StreamIdentity, ssrc: int
    ) -> Track:
        init = TrackInit(
            direction=Direction.SENDONLY,
            codec=Codec.OPUS,
            payload_type=self._audio_payload_type,
            ssrc=ssrc,
            mid=AUDIO_MID,
            cname=identity.cname,
            msid=identity.media_stream_id,
            track_id=f"{identity.media_stream_id}-audio",
        )
        return self._add_track(
            session,
            init,
            clock_rate=AUDIO_CLOCK_RATE,
            nal_separator=NalSeparator.LENGTH,
            max_fragment_size=0,
        )

    def configure_video_track(
        self, session: SessionHandle, identity: StreamIdentity, ssrc: int
    ) -> Track:
        init = TrackInit(
            direction=Direction.SENDONLY,
            codec=Codec.H264,
            payload_type=self._video_payload_type,
            ssrc=ssrc,
            mid=VIDEO_MID,
            cname=identity.cname,
            msid=identity.media_stream_id,
            track_id=f"{identity.media_stream_id}-video",
        )
        return self._add_track(
            session,
            init,
            clock_rate=VIDEO_CLOCK_RATE,
            nal_separator=NalSeparator.START_SEQUENCE,
            max_fragment_size=self._max_fragment_size,
        )

    def _add_track(
        self,
        session: SessionHandle,
        init: TrackInit,
        *,
        clock_rate: int,
        nal_separator: NalSeparator,
        max_fragment_size: int,
    ) -> Track:
        rtp_timestamp = random_u32()
        handle = self._engine.add_track(session, init)
        self._engine.set_packetizer(
            handle,
            PacketizerInit(
                ssrc=init.ssrc,
                cname=init.cname,
                payload_type=init.payload_type,
                clock_rate=clock_rate,
                sequence_number=0,
                timestamp=rtp_timestamp,
                nal_separator=nal_separator,
                max_fragment_size=max_fragment_size,
                sender_reports=True,
                nack_buffer=self._nack_buffer,
            ),
        )
        return Track(
            kind=init.kind,
            codec=init.codec,
            clock_rate=clock_rate,
            payload_type=init.payload_type,
            ssrc=init.ssrc,
            mid=init.mid,
            track_id=init.track_id,
            rtp_timestamp_base=rtp_timestamp,
            handle=handle,
        )

    async def build(
        self,
        session: SessionHandle,
        sprop_parameter_sets: str = "",
        *,
        identity: StreamIdentity | None = None,
    ) -> LocalOffer:
        """Add both tracks to ``session`` and return the finalized local offer."""

        identity = identity or StreamIdentity.generate()
        audio_ssrc = random_u32()
        video_ssrc = random_u32()
        while video_ssrc == audio_ssrc:
            video_ssrc = random_u32()

        audio_track = self.configure_audio_track(session, identity, audio_ssrc)
        video_track = self.configure_video_track(session, identity, video_ssrc)

        await self._engine.set_local_description(session, "offer")
        sdp = self._engine.get_local_description(session)
        if sprop_parameter_sets:
            sdp = splice_parameter_sets(sdp, sprop_parameter_sets)
            logger.info("Munged offer: %s", sdp)
        return LocalOffer(
            sdp=sdp,
            audio_track=audio_track,
            video_track=video_track,
            identity=identity,
        )


__all__ = [
    "AUDIO_CLOCK_RATE",
    "AUDIO_MID",
    "AUDIO_PAYLOAD_TYPE",
    "IDENTIFIER_ALPHABET",
    "IDENTIFIER_LENGTH",
    "LocalOffer",
    "MAX_FRAGMENT_SIZE",
    "NACK_BUFFER_PACKETS",
    "OfferBuilder",
    "StreamIdentity",
    "VIDEO_CLOCK_RATE",
    "VIDEO_MID",
    "VIDEO_PAYLOAD_TYPE",
    "generate_identifier",
    "random_u32",
    "splice_parameter_sets",
]
