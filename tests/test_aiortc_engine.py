import asyncio

import pytest

pytest.importorskip("av")
pytest.importorskip("aiortc")

from aiortc import RTCConfiguration

from whip_output.aiortc_engine import AiortcEngine
from whip_output.sdp import OfferBuilder
from whip_output.transport import PeerState, SessionHandle, TrackHandle, TransportError

from fakes import run_async


def _engine() -> AiortcEngine:
    return AiortcEngine(RTCConfiguration(iceServers=[]))


def test_engine_builds_sendonly_offer():
    async def _run():
        engine = _engine()
        handle = engine.create_session()
        states: list[PeerState] = []
        engine.on_state_change(handle, states.append)
        try:
            offer = await OfferBuilder(engine).build(handle)
        finally:
            await engine.delete_session(handle)
        return offer

    offer = run_async(_run())

    assert "m=audio" in offer.sdp
    assert "m=video" in offer.sdp
    assert "a=sendonly" in offer.sdp
    assert "H264" in offer.sdp or "h264" in offer.sdp
    assert offer.sdp.index("m=audio") < offer.sdp.index("m=video")


def test_engine_tracks_timestamps_and_queues_frames():
    async def _run():
        engine = _engine()
        handle = engine.create_session()
        offer = await OfferBuilder(engine).build(handle)
        video = offer.video_track.handle
        try:
            assert engine.get_track_timestamp(video) == offer.video_track.rtp_timestamp_base
            engine.set_track_timestamp(video, offer.video_track.rtp_timestamp_base + 3000)
            engine.send(video, b"\x00\x00\x00\x01\x65")
            await asyncio.sleep(0)
        finally:
            await engine.delete_session(handle)
        with pytest.raises(TransportError):
            engine.send(video, b"late")

    run_async(_run())


def test_engine_requires_running_loop():
    with pytest.raises(TransportError):
        AiortcEngine().create_session()


def test_unknown_handles_are_rejected():
    async def _run():
        engine = AiortcEngine()
        await engine.delete_session(SessionHandle(99))
        with pytest.raises(TransportError):
            engine.get_track_timestamp(TrackHandle(99, 1))

    run_async(_run())
