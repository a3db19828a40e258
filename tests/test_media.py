"""Tests for MediaSource lifecycle, the track wrappers and device opening."""

import asyncio
import fractions

import av
import numpy as np
import pytest
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from callcore import (
    CallError,
    CallKind,
    CaptureDevices,
    DeviceUnavailable,
    MediaSource,
    SessionEnded,
    UserCancelled,
)
from callcore.media import GatedTrack, LevelMeterTrack, SwitchableTrack, blank_frame
from fakes import CAMERA_PIXEL, SCREEN_PIXEL, FakeDevices, FakeTrack, settle


# ---------------------------------------------------------------------------
# Track helpers
# ---------------------------------------------------------------------------
def test_level_meter_hysteresis():
    changes = []
    meter = LevelMeterTrack(FakeTrack("audio"), changes.append, rms_start=900, rms_stop=600)

    for level in (1000, 700, 650, 500, 800, 200):
        meter.feed(np.full(960, level, dtype=np.int16))

    assert changes == [True, False]
    assert meter.speaking is False


def test_level_meter_scales_float_samples():
    changes = []
    meter = LevelMeterTrack(FakeTrack("audio"), changes.append)

    meter.feed(np.full((1, 960), 0.05, dtype=np.float32))   # ~1640 as int16
    meter.feed(np.zeros(0, dtype=np.float32))

    assert changes == [True]


def test_blank_audio_frame():
    samples = np.full((1, 960), 1234, dtype=np.int16)
    frame = av.AudioFrame.from_ndarray(samples, format="s16", layout="mono")
    frame.sample_rate = 48000
    frame.pts = 4800
    frame.time_base = fractions.Fraction(1, 48000)

    silent = blank_frame(frame)

    assert silent.samples == 960
    assert silent.sample_rate == 48000
    assert silent.pts == 4800
    assert not silent.to_ndarray().any()


def test_blank_video_frame():
    frame = av.VideoFrame.from_ndarray(np.full((48, 64, 3), 200, dtype=np.uint8), format="rgb24")
    frame.pts = 3000
    frame.time_base = fractions.Fraction(1, 90000)

    black = blank_frame(frame)

    assert (black.width, black.height) == (64, 48)
    assert black.pts == 3000
    assert not black.to_ndarray(format="rgb24").any()


def test_gated_track():
    async def scenario():
        source = FakeTrack("audio", level=3000)
        gate = GatedTrack(source)

        assert (await gate.recv()).to_ndarray().any()
        gate.enabled = False
        assert not (await gate.recv()).to_ndarray().any()

        source.stop()
        assert gate.readyState == "ended"
        with pytest.raises(MediaStreamError):
            await gate.recv()

    asyncio.run(scenario())


class SilentTrack(MediaStreamTrack):
    """A source whose recv never returns, like a relay feed nobody writes to."""

    kind = "video"

    async def recv(self):
        await asyncio.Event().wait()


def test_switch_moves_a_waiting_recv_to_the_new_source():
    async def scenario():
        stalled = SilentTrack()
        video = SwitchableTrack(stalled)
        waiting = asyncio.ensure_future(video.recv())
        await asyncio.sleep(0.01)
        assert not waiting.done()

        video.switch(FakeTrack("video", level=SCREEN_PIXEL))
        frame = await asyncio.wait_for(waiting, 1)

        assert frame.to_ndarray()[0, 0, 0] == SCREEN_PIXEL
        assert stalled.readyState == "ended"
        video.stop()

    asyncio.run(scenario())


def test_switchable_track_outlives_an_ended_source():
    async def scenario():
        screen = FakeTrack("video", level=SCREEN_PIXEL)
        video = SwitchableTrack(screen)
        screen.stop()

        waiting = asyncio.ensure_future(video.recv())
        await asyncio.sleep(0.01)
        assert not waiting.done()
        assert video.source is None
        assert video.readyState == "live"

        camera = FakeTrack("video")
        video.switch(camera)
        frame = await asyncio.wait_for(waiting, 1)
        assert frame.to_ndarray()[0, 0, 0] == CAMERA_PIXEL

        video.stop()
        assert camera.readyState == "ended"
        with pytest.raises(MediaStreamError):
            await video.recv()

    asyncio.run(scenario())


def test_stopping_switchable_track_wakes_its_reader():
    async def scenario():
        video = SwitchableTrack()
        waiting = asyncio.ensure_future(video.recv())
        await asyncio.sleep(0.01)

        video.stop()

        with pytest.raises(MediaStreamError):
            await asyncio.wait_for(waiting, 1)

    asyncio.run(scenario())


# ---------------------------------------------------------------------------
# MediaSource lifecycle
# ---------------------------------------------------------------------------
def test_acquire_audio(devices):
    async def scenario():
        media = MediaSource(devices)
        stream = await media.acquire(CallKind.AUDIO)

        assert isinstance(stream.audio, GatedTrack)
        assert stream.video is None
        assert stream.tracks == [stream.audio]
        assert stream.audio.source is devices.opened[0]

        with pytest.raises(CallError):
            await media.acquire(CallKind.AUDIO)
        media.release()

    asyncio.run(scenario())


def test_acquire_after_release_is_refused(devices):
    async def scenario():
        media = MediaSource(devices)
        media.release()
        with pytest.raises(SessionEnded):
            await media.acquire(CallKind.AUDIO)
        assert devices.opened == []

    asyncio.run(scenario())


def test_camera_failure_releases_microphone():
    async def scenario():
        devices = FakeDevices(fail_camera=True)
        media = MediaSource(devices)

        with pytest.raises(DeviceUnavailable):
            await media.acquire(CallKind.VIDEO)

        [mic] = devices.opened
        assert mic.readyState == "ended"
        assert media.stream is None

    asyncio.run(scenario())


def test_release_is_idempotent(devices):
    async def scenario():
        media = MediaSource(devices)
        stream = await media.acquire(CallKind.VIDEO)
        await media.start_screen_share()

        media.release()
        media.release()

        assert media.released
        assert devices.live == []
        assert all(t.readyState == "ended" for t in stream.tracks)
        assert not media.screen_sharing
        assert media.outgoing_track("audio") is None

    asyncio.run(scenario())


def test_cancelled_acquire_releases_late_device(devices):
    async def scenario():
        devices.gate = asyncio.Event()
        media = MediaSource(devices)
        acquiring = asyncio.ensure_future(media.acquire(CallKind.AUDIO))
        await settle()

        acquiring.cancel()
        with pytest.raises(asyncio.CancelledError):
            await acquiring

        devices.gate.set()
        await settle()

        [mic] = devices.opened
        assert mic.readyState == "ended"

    asyncio.run(scenario())


def test_device_opened_after_release_is_stopped(devices):
    async def scenario():
        devices.gate = asyncio.Event()
        media = MediaSource(devices)
        acquiring = asyncio.ensure_future(media.acquire(CallKind.AUDIO))
        await settle()

        media.release()
        devices.gate.set()

        with pytest.raises(SessionEnded):
            await acquiring
        assert devices.live == []

    asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Controls
# ---------------------------------------------------------------------------
def test_toggle_track(devices):
    async def scenario():
        media = MediaSource(devices)
        with pytest.raises(CallError):
            media.toggle_track("audio")

        stream = await media.acquire(CallKind.AUDIO)
        assert media.toggle_track("audio") is False
        assert stream.audio.enabled is False
        assert media.toggle_track("audio") is True
        with pytest.raises(CallError):
            media.toggle_track("video")
        media.release()

    asyncio.run(scenario())


def test_outgoing_track_follows_video_source(devices):
    async def scenario():
        media = MediaSource(devices)
        assert media.outgoing_track("audio") is None

        stream = await media.acquire(CallKind.VIDEO)
        first, second = media.outgoing_track("audio"), media.outgoing_track("audio")
        assert first is not second
        assert first._source is stream.audio
        assert media.outgoing_track("video")._source is stream.video

        screen = await media.start_screen_share()
        assert media.outgoing_track("video")._source is screen
        media.release()

    asyncio.run(scenario())


def test_audio_only_source_has_no_outgoing_video(devices):
    async def scenario():
        media = MediaSource(devices)
        await media.acquire(CallKind.AUDIO)
        assert media.outgoing_track("video") is None
        media.release()

    asyncio.run(scenario())


def test_screen_share_start_and_stop(devices):
    async def scenario():
        media = MediaSource(devices)
        with pytest.raises(CallError):
            await media.start_screen_share()

        await media.acquire(CallKind.VIDEO)
        ended = []
        media.on("screenshareended", lambda: ended.append(True))

        screen = await media.start_screen_share()
        assert media.screen_sharing
        with pytest.raises(CallError):
            await media.start_screen_share()

        assert media.stop_screen_share() is True
        assert media.stop_screen_share() is False
        assert screen.readyState == "ended"
        assert ended == []
        media.release()

    asyncio.run(scenario())


def test_screen_share_ended_by_capture(devices):
    async def scenario():
        media = MediaSource(devices)
        await media.acquire(CallKind.VIDEO)
        ended = []
        media.on("screenshareended", lambda: ended.append(True))

        screen = await media.start_screen_share()
        screen.stop()

        assert ended == [True]
        assert not media.screen_sharing
        assert media.stop_screen_share() is False
        media.release()

    asyncio.run(scenario())


def test_screen_share_denied():
    async def scenario():
        devices = FakeDevices(deny_screen=True)
        media = MediaSource(devices)
        await media.acquire(CallKind.VIDEO)

        with pytest.raises(UserCancelled):
            await media.start_screen_share()
        assert not media.screen_sharing
        media.release()

    asyncio.run(scenario())


# ---------------------------------------------------------------------------
# CaptureDevices
# ---------------------------------------------------------------------------
class _NoVideoPlayer:
    video = None


def test_capture_devices_map_open_errors(monkeypatch):
    async def scenario():
        devices = CaptureDevices(camera=("/dev/video9", "v4l2", {}),
                                 screen=(":9", "x11grab", {}))

        def broken(source, fmt, options):
            raise OSError(f"cannot open {source}")

        monkeypatch.setattr(devices, "_player", broken)
        with pytest.raises(DeviceUnavailable):
            await devices.open_camera()
        with pytest.raises(UserCancelled):
            await devices.open_screen()

        monkeypatch.setattr(devices, "_player", lambda *args: _NoVideoPlayer())
        with pytest.raises(DeviceUnavailable):
            await devices.open_camera()
        with pytest.raises(UserCancelled):
            await devices.open_screen()

    asyncio.run(scenario())
