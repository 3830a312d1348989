"""WHIP output: session lifecycle for publishing to an ingestion endpoint."""
from __future__ import annotations

import asyncio
import functools
import logging
import time
from typing import Callable

from .config import DEFAULT_OUTPUT_SETTINGS, OutputSettings
from .dispatcher import MediaDispatcher
from .host import EncodedPacket, OutputHost, StopCode
from .nal import build_sprop_parameter_sets, extract_parameter_sets
from .sdp import OfferBuilder
from .session import ACTIVE_STATES, Session, SessionState
from .signaling import (
    WHIPClient,
    WHIPConnectionError,
    WHIPEmptyAnswerError,
    WHIPError,
    WHIPStatusError,
)
from .transport import PeerState, SessionHandle, TransportEngine, TransportError

logger = logging.getLogger(__name__)

_SIGNALING_STOP_CODES: dict[type[WHIPError], StopCode] = {
    WHIPConnectionError: StopCode.CONNECT_FAILED,
    WHIPStatusError: StopCode.INVALID_STREAM,
    WHIPEmptyAnswerError: StopCode.CONNECT_FAILED,
}


def _stop_code_for(exc: WHIPError) -> StopCode:
    for error_type, code in _SIGNALING_STOP_CODES.items():
        if isinstance(exc, error_type):
            return code
    return StopCode.ERROR


class WHIPOutput:
    """Publish host frames to a WHIP endpoint over a transport engine.

    ``start()`` and ``stop()`` each schedule one background lifecycle task and
    return without waiting for it; the lifecycle lock makes every request wait
    for the previous task first, so at most one runs at a time. ``data()`` is
    synchronous and never takes the lock. Transport state notifications and
    ``None`` frames may arrive from any thread; they are posted to the event
    loop that last handled a lifecycle request.
    """

    def __init__(
        self,
        host: OutputHost,
        engine: TransportEngine,
        *,
        client: WHIPClient | None = None,
        settings: OutputSettings | None = None,
        name: str = "whip_output",
        clock: Callable[[], int] = time.monotonic_ns,
    ) -> None:
        self.name = name
        self._host = host
        self._engine = engine
        self._settings = settings or DEFAULT_OUTPUT_SETTINGS
        self._client = client if client is not None else WHIPClient(timeout=self._settings.timeout)
        self._builder = OfferBuilder(
            engine,
            audio_payload_type=self._settings.audio_payload_type,
            video_payload_type=self._settings.video_payload_type,
            max_fragment_size=self._settings.max_fragment_size,
            nack_buffer=self._settings.nack_buffer,
        )
        self._clock = clock
        self._log = logging.getLogger(f"{__name__}.{name}")
        self._lifecycle_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._session: Session | None = None
        self._dispatcher: MediaDispatcher | None = None
        self._running = False
        self._requests: set[asyncio.Task[None]] = set()

    # ------------------------------ status ---------------------------------
    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def state(self) -> SessionState:
        session = self._session
        return session.state if session is not None else SessionState.IDLE

    @property
    def running(self) -> bool:
        return self._running

    @property
    def total_bytes(self) -> int:
        session = self._session
        return session.total_bytes_sent.value if session is not None else 0

    @property
    def connect_time_ms(self) -> int:
        session = self._session
        return session.connect_time_ms.value if session is not None else 0

    @property
    def resource_url(self) -> str | None:
        session = self._session
        if session is None or not session.resource_url:
            return None
        return session.resource_url

    def status(self) -> dict[str, object]:
        session = self._session
        last_status = session.reported_status if session is not None else None
        return {
            "name": self.name,
            "state": self.state.value,
            "running": self._running,
            "total_bytes": self.total_bytes,
            "connect_time_ms": self.connect_time_ms,
            "resource_url": self.resource_url,
            "last_status": last_status.value if last_status is not None else None,
        }

    # ---------------------------- host requests ----------------------------
    async def start(self) -> bool:
        """Schedule a new publishing session.

        Returns ``False`` when the host cannot begin capturing or when a
        session is already starting or live.
        """

        async with self._lifecycle_lock:
            if not self._host.can_begin_data_capture():
                self._log.warning("Host cannot begin data capture")
                return False
            if not self._host.initialize_encoders():
                self._log.warning("Host failed to initialise encoders")
                return False
            await self._join_task()
            current = self._session
            if current is not None and current.state in ACTIVE_STATES:
                self._log.warning(
                    "Start rejected: session is already %s", current.state.value
                )
                return False
            loop = asyncio.get_running_loop()
            self._loop = loop
            session = Session(state=SessionState.STARTING)
            self._session = session
            self._dispatcher = None
            self._task = loop.create_task(self._start_sequence(session))
            return True

    async def stop(self, signal: bool = True) -> None:
        """Schedule teardown of the current session.

        ``signal`` controls whether a successful stop is reported to the host;
        internally triggered stops pass ``False`` because the precise reason
        has already been reported.
        """

        async with self._lifecycle_lock:
            await self._join_task()
            loop = asyncio.get_running_loop()
            self._loop = loop
            self._task = loop.create_task(self._stop_sequence(self._session, signal))

    async def _stop_session(self, session: Session, signal: bool) -> None:
        """Stop ``session`` only if it is still the current one."""

        async with self._lifecycle_lock:
            await self._join_task()
            if self._session is not session:
                self._log.debug("Dropping stop request for a replaced session")
                return
            self._task = asyncio.get_running_loop().create_task(
                self._stop_sequence(session, signal)
            )

    async def join(self) -> None:
        """Wait for queued stop requests and the current lifecycle task."""

        await asyncio.sleep(0)
        while self._requests:
            await asyncio.gather(*list(self._requests), return_exceptions=True)
        async with self._lifecycle_lock:
            await self._join_task()

    async def close(self) -> None:
        await self.stop()
        await self.join()
        await self._client.close()

    def data(self, packet: EncodedPacket | None) -> None:
        """Forward an encoded frame; ``None`` signals an upstream encode failure."""

        session = self._session
        if packet is None:
            self._log.warning("Encoder delivered no packet; stopping output")
            loop = self._loop
            if loop is None or loop.is_closed():
                # No lifecycle request has run on a live loop; report directly.
                if session is not None:
                    self._report(session, StopCode.ENCODE_ERROR)
                else:
                    self._host.signal_stop(StopCode.ENCODE_ERROR)
                return
            self._post(self._handle_stop_request, session, StopCode.ENCODE_ERROR)
            return
        dispatcher = self._dispatcher
        if session is None or dispatcher is None or not session.accepting_frames:
            return
        dispatcher.dispatch(packet)

    # --------------------------- lifecycle tasks ---------------------------
    async def _join_task(self) -> None:
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        except Exception:  # pragma: no cover - sequences handle their own errors
            self._log.exception("Lifecycle task terminated unexpectedly")
        finally:
            if self._task is task:
                self._task = None

    async def _start_sequence(self, session: Session) -> None:
        try:
            if not self._init(session):
                return
            offer_sdp = await self._setup(session)
            if offer_sdp is None:
                return
            if not await self._connect(session, offer_sdp):
                return
        except asyncio.CancelledError:
            await self._release_transport(session)
            session.state = SessionState.FAILED
            raise
        except Exception:
            self._log.exception("Unexpected error while starting output")
            await self._release_transport(session)
            session.state = SessionState.FAILED
            self._report(session, StopCode.ERROR)
            return

        if session.reported_status is not None:
            # A stop request raced the connection; it will clean up.
            return
        self._dispatcher = MediaDispatcher(self._engine, session)
        session.accepting_frames = True
        self._running = True
        self._host.begin_data_capture()
        self._log.info("Publishing to %s", session.endpoint_url)

    def _init(self, session: Session) -> bool:
        service = self._host.get_service()
        if service is None:
            self._fail(session, StopCode.ERROR, "No service configured for output")
            return False
        endpoint_url = (service.endpoint_url or "").strip()
        if not endpoint_url:
            self._fail(session, StopCode.BAD_PATH, "No WHIP endpoint URL configured")
            return False
        session.endpoint_url = endpoint_url
        session.bearer_token = service.bearer_token or None

        extradata = self._host.get_video_extradata()
        if extradata:
            units = extract_parameter_sets(extradata)
            session.sprop_parameter_sets = build_sprop_parameter_sets(units)
            if session.sprop_parameter_sets:
                self._log.info("Parameter set: %s", session.sprop_parameter_sets)
            else:
                self._log.debug("No h264 critical data available")
        return True

    async def _setup(self, session: Session) -> str | None:
        try:
            handle = self._engine.create_session()
        except TransportError as exc:
            self._fail(session, StopCode.ERROR, f"Unable to create transport session: {exc}")
            return None
        session.transport_handle = handle
        session.transport_created = True
        session.mark_connecting(self._clock())

        try:
            self._engine.on_state_change(
                handle, functools.partial(self._on_peer_state, session)
            )
            offer = await self._builder.build(handle, session.sprop_parameter_sets)
        except TransportError as exc:
            await self._release_transport(session)
            self._fail(session, StopCode.ERROR, f"Unable to configure transport session: {exc}")
            return None
        finally:
            session.sprop_parameter_sets = ""

        session.audio_track = offer.audio_track
        session.video_track = offer.video_track
        return offer.sdp

    async def _connect(self, session: Session, offer_sdp: str) -> bool:
        try:
            result = await self._client.offer(
                offer_sdp, session.endpoint_url, session.bearer_token
            )
        except WHIPError as exc:
            self._log.warning("Connect failed: %s", exc)
            await self._release_transport(session)
            session.state = SessionState.FAILED
            self._report(session, _stop_code_for(exc))
            return False

        session.resource_url = result.resource_url or ""
        handle = session.transport_handle
        try:
            if handle is None:
                raise TransportError("Transport session released during connect")
            await self._engine.set_remote_description(handle, result.answer, "answer")
        except TransportError as exc:
            self._log.warning("Unable to apply remote answer: %s", exc)
            await self._release_transport(session)
            await self._teardown(session)
            session.state = SessionState.FAILED
            self._report(session, StopCode.ERROR)
            return False
        return True

    async def _stop_sequence(self, session: Session | None, signal: bool) -> None:
        if session is None or session.state is SessionState.STOPPED:
            self._log.debug("Stop requested with no active session")
            return
        previous = session.state
        handle = self._detach_transport(session)
        session.state = SessionState.STOPPING
        await self._delete_transport(handle)
        await self._teardown(session)

        # ``signal`` preserves the host's running flag across internally
        # triggered stops, which have already reported their own status.
        if self._running and signal:
            self._report(session, StopCode.SUCCESS)

        session.reset_counters()
        failed = previous is SessionState.FAILED or session.reported_status not in (
            None,
            StopCode.SUCCESS,
        )
        session.state = SessionState.FAILED if failed else SessionState.STOPPED
        self._log.info("Output stopped (%s)", session.state.value)

    def _detach_transport(self, session: Session) -> SessionHandle | None:
        handle = session.transport_handle
        if handle is None:
            return None
        session.transport_handle = None
        session.accepting_frames = False
        session.clear_tracks()
        if self._session is session:
            self._dispatcher = None
        return handle

    async def _release_transport(self, session: Session) -> None:
        await self._delete_transport(self._detach_transport(session))

    async def _delete_transport(self, handle: SessionHandle | None) -> None:
        if handle is None:
            return
        try:
            await self._engine.delete_session(handle)
        except TransportError as exc:
            self._log.warning("Failed to delete transport session: %s", exc)

    async def _teardown(self, session: Session) -> None:
        if session.teardown_attempted or not session.transport_created:
            return
        session.teardown_attempted = True
        if await self._client.delete(session.resource_url, session.bearer_token):
            session.resource_url = ""

    # ------------------------- status and callbacks ------------------------
    def _fail(self, session: Session, code: StopCode, message: str) -> None:
        self._log.warning(message)
        session.state = SessionState.FAILED
        self._report(session, code)

    def _report(self, session: Session, code: StopCode) -> bool:
        if session.reported_status is not None:
            self._log.debug(
                "Suppressing %s; %s already reported", code.value, session.reported_status.value
            )
            return False
        session.reported_status = code
        self._running = False
        try:
            self._host.signal_stop(code)
        except Exception:  # pragma: no cover - host callbacks are external
            self._log.exception("Host failed to handle stop signal %s", code.value)
        return True

    def _post(self, callback: Callable[..., None], *args: object) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            self._log.debug("No event loop available; dropping %s", getattr(callback, "__name__", callback))
            return
        loop.call_soon_threadsafe(callback, *args)

    def _on_peer_state(self, session: Session, state: PeerState) -> None:
        # Engine callback context: timestamp the event and hand it to the loop.
        self._post(self._apply_peer_state, session, state, self._clock())

    def _apply_peer_state(self, session: Session, state: PeerState, now_ns: int) -> None:
        self._log.info("PeerConnection state is now: %s", state.value)
        if self._session is not session or session.transport_handle is None:
            return
        if state is PeerState.CONNECTED:
            if session.state is SessionState.CONNECTING:
                elapsed = session.mark_connected(now_ns)
                self._log.info("Connect time: %dms", elapsed)
        elif state is PeerState.DISCONNECTED:
            self._handle_stop_request(session, StopCode.DISCONNECTED)
        elif state is PeerState.FAILED:
            self._handle_stop_request(session, StopCode.ERROR)

    def _handle_stop_request(self, session: Session | None, code: StopCode) -> None:
        if session is None or self._session is not session:
            return
        if session.state in (SessionState.STOPPING, SessionState.STOPPED):
            return
        self._report(session, code)
        task = asyncio.get_running_loop().create_task(self._stop_session(session, signal=False))
        self._requests.add(task)
        task.add_done_callback(self._requests.discard)


__all__ = ["WHIPOutput"]
