"""Feed an output from a media container demuxed with PyAV."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from .config import ServiceSettings
from .host import EncodedPacket, ServiceInfo, StopCode
from .transport import MediaKind

if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from .output import WHIPOutput

try:  # pragma: no cover - dependency availability varies by platform
    import av  # type: ignore
except ImportError as exc:  # pragma: no cover - dependency availability varies
    av = None  # type: ignore[assignment]
    _AV_IMPORT_ERROR = exc
else:  # pragma: no cover - dependency availability varies
    _AV_IMPORT_ERROR = None

logger = logging.getLogger(__name__)

_CODEC_KINDS: dict[str, MediaKind] = {
    "h264": MediaKind.VIDEO,
    "opus": MediaKind.AUDIO,
}


def _ensure_av_available() -> None:
    if _AV_IMPORT_ERROR is not None:
        raise RuntimeError(
            "PyAV is required to publish media files. Install the 'av' package."
        ) from _AV_IMPORT_ERROR


def codec_kind(codec_name: str | None) -> MediaKind | None:
    """Return the media kind published for ``codec_name``, if supported."""

    if not codec_name:
        return None
    return _CODEC_KINDS.get(codec_name.lower())


def to_encoded_packet(packet: object, kind: MediaKind) -> EncodedPacket | None:
    """Convert a demuxed PyAV packet into an :class:`EncodedPacket`.

    Returns ``None`` for flush packets and packets without timing information.
    """

    dts = getattr(packet, "dts", None)
    if dts is None:
        dts = getattr(packet, "pts", None)
    time_base = getattr(packet, "time_base", None)
    if dts is None or time_base is None or not getattr(packet, "size", 0):
        return None
    dts_usec = int(dts * time_base * 1_000_000)
    return EncodedPacket(
        kind=kind,
        data=bytes(packet),
        dts_usec=dts_usec,
        keyframe=bool(getattr(packet, "is_keyframe", False)),
    )


class ContainerSource:
    """Host implementation publishing the H.264/Opus streams of a container.

    The H.264 stream must use Annex-B framing (MPEG-TS or raw ``.h264``).
    """

    def __init__(
        self,
        path: Path | str,
        service: ServiceSettings,
        *,
        realtime: bool = True,
    ) -> None:
        self._path = str(path)
        self._service = service
        self._realtime = realtime
        self._container = None
        self._kinds: dict[int, MediaKind] = {}
        self._capture_event = asyncio.Event()
        self._stop_event = asyncio.Event()
        self.stop_codes: list[StopCode] = []

    @property
    def last_stop_code(self) -> StopCode | None:
        return self.stop_codes[-1] if self.stop_codes else None

    def _open(self):
        if self._container is None:
            _ensure_av_available()
            container = av.open(self._path)
            kinds: dict[int, MediaKind] = {}
            for stream in container.streams:
                kind = codec_kind(getattr(stream.codec_context, "name", None))
                if kind is None:
                    logger.warning(
                        "Skipping unsupported %s stream #%d", stream.type, stream.index
                    )
                    continue
                if kind in kinds.values():
                    continue
                kinds[stream.index] = kind
            self._container = container
            self._kinds = kinds
        return self._container

    def close(self) -> None:
        if self._container is not None:
            self._container.close()
            self._container = None

    # ------------------------------ host API -------------------------------
    def can_begin_data_capture(self) -> bool:
        if self._container is None:
            _ensure_av_available()
            try:
                self._open()
            except (OSError, av.error.FFmpegError) as exc:
                logger.warning("Unable to open %s: %s", self._path, exc)
                return False
        return bool(self._kinds)

    def initialize_encoders(self) -> bool:
        # Packets in the container are already encoded.
        return True

    def begin_data_capture(self) -> None:
        self._capture_event.set()

    def get_service(self) -> ServiceInfo | None:
        return ServiceInfo(self._service.endpoint_url, self._service.bearer_token)

    def get_video_extradata(self) -> bytes | None:
        container = self._open()
        for index, kind in self._kinds.items():
            if kind is MediaKind.VIDEO:
                extradata = container.streams[index].codec_context.extradata
                return bytes(extradata) if extradata else None
        return None

    def signal_stop(self, code: StopCode) -> None:
        logger.info("Output reported %s", code.value)
        self.stop_codes.append(code)
        self._stop_event.set()

    # ------------------------------ publishing -----------------------------
    async def _wait_for_capture(self) -> bool:
        capture = asyncio.ensure_future(self._capture_event.wait())
        stopped = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({capture, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            capture.cancel()
            stopped.cancel()
        return self._capture_event.is_set() and not self._stop_event.is_set()

    async def publish(self, output: "WHIPOutput", *, duration: float | None = None) -> StopCode | None:
        """Start ``output``, stream every packet, then stop it.

        Returns the last status the output reported.
        """

        if not await output.start():
            return None
        try:
            if await self._wait_for_capture():
                await self._pump(output, duration)
        finally:
            await output.stop()
            await output.join()
            self.close()
        return self.last_stop_code

    async def _pump(self, output: "WHIPOutput", duration: float | None) -> None:
        container = self._open()
        loop = asyncio.get_running_loop()
        started = loop.time()
        first_dts: int | None = None
        streams = [container.streams[index] for index in self._kinds]
        for packet in container.demux(*streams):
            if self._stop_event.is_set():
                break
            kind = self._kinds.get(packet.stream.index)
            if kind is None:
                continue
            frame = to_encoded_packet(packet, kind)
            if frame is None:
                continue
            if first_dts is None:
                first_dts = frame.dts_usec
            offset = (frame.dts_usec - first_dts) / 1_000_000
            if duration is not None and offset >= duration:
                break
            if self._realtime:
                delay = started + offset - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
            else:
                await asyncio.sleep(0)
            output.data(frame)


__all__ = ["ContainerSource", "codec_kind", "to_encoded_packet"]
