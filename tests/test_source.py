from fractions import Fraction
from types import SimpleNamespace

from whip_output.config import ServiceSettings
from whip_output.host import StopCode
from whip_output.source import ContainerSource, codec_kind, to_encoded_packet
from whip_output.transport import MediaKind

from fakes import run_async

VIDEO_TIME_BASE = Fraction(1, 90000)
AUDIO_TIME_BASE = Fraction(1, 48000)


class FakePacket:
    def __init__(
        self,
        index: int,
        dts: int | None,
        payload: bytes = b"\x00\x00\x00\x01\x65",
        time_base: Fraction = VIDEO_TIME_BASE,
        keyframe: bool = False,
    ) -> None:
        self.stream = SimpleNamespace(index=index)
        self.dts = dts
        self.pts = dts
        self.time_base = time_base
        self.size = len(payload)
        self.is_keyframe = keyframe
        self._payload = payload

    def __bytes__(self) -> bytes:
        return self._payload


class FakeContainer:
    def __init__(self, packets: list[FakePacket], extradata: bytes | None = b"\x00\x00\x01\x67") -> None:
        self.streams = [
            SimpleNamespace(index=0, type="video", codec_context=SimpleNamespace(name="h264", extradata=extradata)),
            SimpleNamespace(index=1, type="audio", codec_context=SimpleNamespace(name="opus", extradata=None)),
        ]
        self.packets = packets
        self.closed = False

    def demux(self, *streams):
        yield from self.packets

    def close(self) -> None:
        self.closed = True


class RecordingOutput:
    def __init__(self, host: ContainerSource) -> None:
        self.host = host
        self.frames = []
        self.stops = 0

    async def start(self) -> bool:
        self.host.begin_data_capture()
        return True

    def data(self, packet) -> None:
        self.frames.append(packet)

    async def stop(self, signal: bool = True) -> None:
        self.stops += 1
        if signal and not self.host.stop_codes:
            self.host.signal_stop(StopCode.SUCCESS)

    async def join(self) -> None:
        return None


def _source(container: FakeContainer) -> ContainerSource:
    source = ContainerSource(
        "capture.ts",
        ServiceSettings("https://ingest.example.com/whip", "token"),
        realtime=False,
    )
    source._container = container
    source._kinds = {0: MediaKind.VIDEO, 1: MediaKind.AUDIO}
    return source


def test_codec_kind():
    assert codec_kind("h264") is MediaKind.VIDEO
    assert codec_kind("OPUS") is MediaKind.AUDIO
    assert codec_kind("aac") is None
    assert codec_kind(None) is None


def test_to_encoded_packet_converts_timestamps():
    packet = to_encoded_packet(FakePacket(0, 3000, keyframe=True), MediaKind.VIDEO)
    assert packet is not None
    assert packet.dts_usec == 33333
    assert packet.keyframe is True
    assert packet.data == b"\x00\x00\x00\x01\x65"

    audio = to_encoded_packet(FakePacket(1, 960, b"\xfc", AUDIO_TIME_BASE), MediaKind.AUDIO)
    assert audio is not None and audio.dts_usec == 20000


def test_to_encoded_packet_skips_flush_packets():
    assert to_encoded_packet(FakePacket(0, None), MediaKind.VIDEO) is None
    assert to_encoded_packet(FakePacket(0, 0, b""), MediaKind.VIDEO) is None


def test_source_reports_service_and_extradata():
    source = _source(FakeContainer([]))
    service = source.get_service()
    assert service.endpoint_url == "https://ingest.example.com/whip"
    assert service.bearer_token == "token"
    assert source.get_video_extradata() == b"\x00\x00\x01\x67"
    assert source.can_begin_data_capture() is True
    assert source.initialize_encoders() is True


def test_publish_streams_every_packet_then_stops():
    container = FakeContainer(
        [
            FakePacket(0, 0, keyframe=True),
            FakePacket(1, 0, b"\xfc\x01", AUDIO_TIME_BASE),
            FakePacket(0, None),
            FakePacket(0, 3000),
        ]
    )
    source = _source(container)
    output = RecordingOutput(source)

    code = run_async(source.publish(output))

    assert code is StopCode.SUCCESS
    assert [frame.kind for frame in output.frames] == [MediaKind.VIDEO, MediaKind.AUDIO, MediaKind.VIDEO]
    assert output.stops == 1
    assert container.closed is True


def test_publish_honours_duration():
    container = FakeContainer([FakePacket(0, dts) for dts in (0, 3000, 6000, 9000)])
    source = _source(container)
    output = RecordingOutput(source)

    run_async(source.publish(output, duration=0.05))

    assert [frame.dts_usec for frame in output.frames] == [0, 33333]


def test_publish_stops_when_output_reports_failure():
    container = FakeContainer([FakePacket(0, 0), FakePacket(0, 3000)])
    source = _source(container)

    class FailingOutput(RecordingOutput):
        def data(self, packet) -> None:
            super().data(packet)
            self.host.signal_stop(StopCode.DISCONNECTED)

    output = FailingOutput(source)
    code = run_async(source.publish(output))

    assert len(output.frames) == 1
    assert source.stop_codes == [StopCode.DISCONNECTED]
    assert code is StopCode.DISCONNECTED
