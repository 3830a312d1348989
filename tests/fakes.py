"""In-memory collaborators shared by the output tests."""
from __future__ import annotations

import asyncio
import itertools

import httpx

from whip_output.host import ServiceInfo, StopCode
from whip_output.transport import (
    PacketizerInit,
    PeerState,
    SessionHandle,
    StateListener,
    TrackHandle,
    TrackInit,
    TransportError,
)

LOCAL_OFFER = (
    "v=0\r\n"
    "o=- 0 0 IN IP4 127.0.0.1\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "a=group:BUNDLE 0 1\r\n"
    "a=group:LS 0 1\r\n"
    "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
    "a=mid:0\r\n"
    "a=rtpmap:111 opus/48000/2\r\n"
    "m=video 9 UDP/TLS/RTP/SAVPF 96\r\n"
    "a=mid:1\r\n"
    "a=rtpmap:96 H264/90000\r\n"
    "a=fmtp:96 profile-level-id=42e01f;packetization-mode=1;level-asymmetry-allowed=1\r\n"
)

REMOTE_ANSWER = "v=0\r\no=- 1 1 IN IP4 127.0.0.1\r\ns=-\r\nt=0 0\r\n"

SPS = b"\x67\x42\xc0\x1f\xda\x01\x40\x16\xe8"
PPS = b"\x68\xce\x3c\x80"


def run_async(coro):
    return asyncio.run(coro)


class FakeEngine:
    """Transport engine keeping every session in memory."""

    def __init__(self, *, local_sdp: str = LOCAL_OFFER) -> None:
        self.local_sdp = local_sdp
        self.fail_create = False
        self.fail_remote = False
        self.fail_send = False
        self._ids = itertools.count(1)
        self.sessions: dict[int, dict[str, object]] = {}
        self.deleted: list[SessionHandle] = []
        self.tracks: dict[TrackHandle, TrackInit] = {}
        self.packetizers: dict[TrackHandle, PacketizerInit] = {}
        self.timestamps: dict[TrackHandle, int] = {}
        self.sent: list[tuple[TrackHandle, bytes, int]] = []
        self.remote: list[str] = []

    def create_session(self) -> SessionHandle:
        if self.fail_create:
            raise TransportError("engine unavailable")
        handle = SessionHandle(next(self._ids))
        self.sessions[handle.id] = {"listeners": [], "local": None}
        return handle

    async def delete_session(self, session: SessionHandle) -> None:
        if self.sessions.pop(session.id, None) is not None:
            self.deleted.append(session)

    def on_state_change(self, session: SessionHandle, listener: StateListener) -> None:
        self.sessions[session.id]["listeners"].append(listener)

    def emit(self, state: PeerState, session: SessionHandle | None = None) -> None:
        targets = [session.id] if session is not None else list(self.sessions)
        for session_id in targets:
            for listener in list(self.sessions[session_id]["listeners"]):
                listener(state)

    def add_track(self, session: SessionHandle, init: TrackInit) -> TrackHandle:
        if session.id not in self.sessions:
            raise TransportError("unknown session")
        handle = TrackHandle(session.id, next(self._ids))
        self.tracks[handle] = init
        return handle

    def set_packetizer(self, track: TrackHandle, init: PacketizerInit) -> None:
        self.packetizers[track] = init
        self.timestamps[track] = init.timestamp

    async def set_local_description(self, session: SessionHandle, sdp_type: str = "offer") -> None:
        self.sessions[session.id]["local"] = self.local_sdp

    def get_local_description(self, session: SessionHandle) -> str:
        local = self.sessions[session.id]["local"]
        if local is None:
            raise TransportError("no local description")
        return local

    async def set_remote_description(
        self, session: SessionHandle, sdp: str, sdp_type: str = "answer"
    ) -> None:
        if self.fail_remote:
            raise TransportError("malformed answer")
        self.remote.append(sdp)

    def get_track_timestamp(self, track: TrackHandle) -> int:
        if track.session_id not in self.sessions:
            raise TransportError("unknown track")
        return self.timestamps[track]

    def set_track_timestamp(self, track: TrackHandle, timestamp: int) -> None:
        self.timestamps[track] = timestamp

    def send(self, track: TrackHandle, payload: bytes) -> None:
        if self.fail_send or track.session_id not in self.sessions:
            raise TransportError("track closed")
        self.sent.append((track, payload, self.timestamps[track]))


class FakeHost:
    """Host recording every callback made by an output."""

    def __init__(
        self,
        endpoint_url: str | None = "https://ingest.example.com/whip/live",
        bearer_token: str | None = "secret",
        *,
        extradata: bytes | None = b"\x00\x00\x00\x01" + SPS + b"\x00\x00\x00\x01" + PPS,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.bearer_token = bearer_token
        self.extradata = extradata
        self.can_capture = True
        self.encoders_ready = True
        self.capture_started = 0
        self.stop_codes: list[StopCode] = []

    def can_begin_data_capture(self) -> bool:
        return self.can_capture

    def initialize_encoders(self) -> bool:
        return self.encoders_ready

    def begin_data_capture(self) -> None:
        self.capture_started += 1

    def get_service(self) -> ServiceInfo | None:
        if self.endpoint_url is None:
            return None
        return ServiceInfo(self.endpoint_url, self.bearer_token)

    def get_video_extradata(self) -> bytes | None:
        return self.extradata

    def signal_stop(self, code: StopCode) -> None:
        self.stop_codes.append(code)


class RecordingEndpoint:
    """``httpx.MockTransport`` handler emulating a WHIP server."""

    def __init__(
        self,
        *,
        status_code: int = 201,
        answer: str = REMOTE_ANSWER,
        location: str | None = "/resource/abc",
        delete_status: int = 200,
        error: Exception | None = None,
    ) -> None:
        self.status_code = status_code
        self.answer = answer
        self.location = location
        self.delete_status = delete_status
        self.error = error
        self.requests: list[httpx.Request] = []

    @property
    def posts(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.method == "POST"]

    @property
    def deletes(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.method == "DELETE"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if request.method == "DELETE":
            return httpx.Response(self.delete_status)
        headers = {"Content-Type": "application/sdp"}
        if self.location is not None:
            headers["Location"] = self.location
        return httpx.Response(self.status_code, text=self.answer, headers=headers)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)
