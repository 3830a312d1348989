"""Transport engine backed by aiortc peer connections."""
from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from dataclasses import dataclass, field
from fractions import Fraction

import av
from aiortc import MediaStreamTrack, RTCConfiguration, RTCPeerConnection, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError
from aiortc.rtcrtpsender import RTCRtpSender

from .transport import (
    Codec,
    PacketizerInit,
    PeerState,
    SessionHandle,
    StateListener,
    TrackHandle,
    TrackInit,
    TransportError,
)

logger = logging.getLogger(__name__)

_CONNECTION_STATES: dict[str, PeerState] = {
    "new": PeerState.NEW,
    "connecting": PeerState.CONNECTING,
    "connected": PeerState.CONNECTED,
    "disconnected": PeerState.DISCONNECTED,
    "failed": PeerState.FAILED,
    "closed": PeerState.CLOSED,
}

_CODEC_MIME_TYPES: dict[Codec, str] = {
    Codec.OPUS: "audio/opus",
    Codec.H264: "video/h264",
}

_RTP_TIMESTAMP_MODULO = 1 << 32


class EncodedPacketTrack(MediaStreamTrack):
    """Track that hands already encoded packets to aiortc's packetizers."""

    def __init__(self, kind: str) -> None:
        super().__init__()
        self.kind = kind
        self._queue: asyncio.Queue[av.Packet | None] = asyncio.Queue()

    async def recv(self) -> av.Packet:
        if self.readyState != "live":
            raise MediaStreamError
        packet = await self._queue.get()
        if packet is None:
            raise MediaStreamError
        return packet

    def push(self, packet: av.Packet) -> None:
        if self.readyState == "live":
            self._queue.put_nowait(packet)

    def stop(self) -> None:
        self._queue.put_nowait(None)
        super().stop()


@dataclass
class _TrackState:
    init: TrackInit
    track: EncodedPacketTrack
    clock_rate: int = 90000
    start_timestamp: int = 0
    timestamp: int = 0


@dataclass
class _PeerSession:
    pc: RTCPeerConnection
    listeners: list[StateListener] = field(default_factory=list)
    tracks: dict[int, _TrackState] = field(default_factory=dict)


def _codec_preferences(kind: str, codec: Codec) -> list[object]:
    mime_type = _CODEC_MIME_TYPES[codec]
    capabilities = RTCRtpSender.getCapabilities(kind)
    return [c for c in capabilities.codecs if c.mimeType.lower() == mime_type]


class AiortcEngine:
    """Implements the transport contract with one ``RTCPeerConnection`` per session.

    aiortc picks its own SSRCs, payload types and fragment size; the values in
    ``TrackInit`` and ``PacketizerInit`` are kept for timestamp bookkeeping.
    Must be used from a running event loop; ``send`` may be called from any
    thread.
    """

    def __init__(self, configuration: RTCConfiguration | None = None) -> None:
        self._configuration = configuration
        self._ids = itertools.count(1)
        self._sessions: dict[int, _PeerSession] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    def _session(self, handle: SessionHandle) -> _PeerSession:
        try:
            return self._sessions[handle.id]
        except KeyError:
            raise TransportError(f"Unknown transport session {handle.id}") from None

    def _track(self, handle: TrackHandle) -> _TrackState:
        peer = self._sessions.get(handle.session_id)
        state = peer.tracks.get(handle.id) if peer is not None else None
        if state is None:
            raise TransportError(f"Unknown track {handle.id} on session {handle.session_id}")
        return state

    def create_session(self) -> SessionHandle:
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise TransportError("aiortc sessions require a running event loop") from exc
        pc = RTCPeerConnection(configuration=self._configuration)
        handle = SessionHandle(next(self._ids))
        peer = _PeerSession(pc)
        self._sessions[handle.id] = peer

        @pc.on("connectionstatechange")
        def _on_connection_state() -> None:
            state = _CONNECTION_STATES.get(pc.connectionState)
            if state is None:  # pragma: no cover - future aiortc states
                return
            for listener in list(peer.listeners):
                listener(state)

        return handle

    async def delete_session(self, session: SessionHandle) -> None:
        peer = self._sessions.pop(session.id, None)
        if peer is None:
            return
        for state in peer.tracks.values():
            state.track.stop()
        with contextlib.suppress(Exception):
            await peer.pc.close()

    def on_state_change(self, session: SessionHandle, listener: StateListener) -> None:
        self._session(session).listeners.append(listener)

    def add_track(self, session: SessionHandle, init: TrackInit) -> TrackHandle:
        peer = self._session(session)
        kind = init.kind.value
        track = EncodedPacketTrack(kind)
        try:
            transceiver = peer.pc.addTransceiver(track, direction=init.direction.value)
            preferences = _codec_preferences(kind, init.codec)
            if preferences:
                transceiver.setCodecPreferences(preferences)
        except Exception as exc:
            raise TransportError(f"Unable to add {kind} track: {exc}") from exc
        handle = TrackHandle(session.id, next(self._ids))
        peer.tracks[handle.id] = _TrackState(init=init, track=track)
        return handle

    def set_packetizer(self, track: TrackHandle, init: PacketizerInit) -> None:
        state = self._track(track)
        state.clock_rate = init.clock_rate
        state.start_timestamp = init.timestamp % _RTP_TIMESTAMP_MODULO
        state.timestamp = state.start_timestamp

    async def set_local_description(self, session: SessionHandle, sdp_type: str = "offer") -> None:
        pc = self._session(session).pc
        try:
            description = await (pc.createOffer() if sdp_type == "offer" else pc.createAnswer())
            await pc.setLocalDescription(description)
        except Exception as exc:
            raise TransportError(f"Unable to create local {sdp_type}: {exc}") from exc

    def get_local_description(self, session: SessionHandle) -> str:
        description = self._session(session).pc.localDescription
        if description is None:
            raise TransportError("Local description has not been set")
        return description.sdp

    async def set_remote_description(
        self, session: SessionHandle, sdp: str, sdp_type: str = "answer"
    ) -> None:
        pc = self._session(session).pc
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))
        except Exception as exc:
            raise TransportError(f"Unable to apply remote {sdp_type}: {exc}") from exc

    def get_track_timestamp(self, track: TrackHandle) -> int:
        return self._track(track).timestamp

    def set_track_timestamp(self, track: TrackHandle, timestamp: int) -> None:
        self._track(track).timestamp = timestamp % _RTP_TIMESTAMP_MODULO

    def send(self, track: TrackHandle, payload: bytes) -> None:
        state = self._track(track)
        loop = self._loop
        if loop is None or loop.is_closed():
            raise TransportError("Event loop is not running")
        pts = (state.timestamp - state.start_timestamp) % _RTP_TIMESTAMP_MODULO
        packet = av.Packet(bytes(payload))
        packet.pts = pts
        packet.dts = pts
        packet.time_base = Fraction(1, state.clock_rate)
        loop.call_soon_threadsafe(state.track.push, packet)


__all__ = ["AiortcEngine", "EncodedPacketTrack"]
