"""
Local media: capture devices, the per-call Media Source and track helpers.

Device tracks are never handed to a peer connection directly.  The Media
Source wraps each one in a ``GatedTrack`` (the mute / camera-off switch) and
hands every peer link its own ``MediaRelay`` subscription, so one microphone
feeds any number of links and toggling affects all of them at once.
"""

import asyncio
import fractions
import logging
import os
import sys
from dataclasses import dataclass

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.mediastreams import MediaStreamError
from pyee.asyncio import AsyncIOEventEmitter

from .config import BLOCK_SIZE, SAMPLE_RATE, SPEAK_RMS_START, SPEAK_RMS_STOP
from .errors import CallError, DeviceUnavailable, SessionEnded, UserCancelled
from .models import CallKind

log = logging.getLogger("callcore.media")


def _stop_quietly(track: MediaStreamTrack | None):
    if track is None:
        return
    try:
        track.stop()
    except Exception as e:
        log.debug("Error stopping %s track: %s", track.kind, e)


def blank_frame(frame):
    """Return a silent / black frame with the same shape and timing as *frame*."""
    if isinstance(frame, av.AudioFrame):
        silent = np.zeros_like(frame.to_ndarray())
        out = av.AudioFrame.from_ndarray(silent, format=frame.format.name,
                                         layout=frame.layout.name)
        out.sample_rate = frame.sample_rate
    else:
        black = np.zeros((frame.height, frame.width, 3), dtype=np.uint8)
        out = av.VideoFrame.from_ndarray(black, format="rgb24")
    out.pts = frame.pts
    out.time_base = frame.time_base
    return out


# ---------------------------------------------------------------------------
# Track wrappers
# ---------------------------------------------------------------------------
class GatedTrack(MediaStreamTrack):
    """Pass-through track with an ``enabled`` switch.

    While disabled the device keeps running and the peer keeps receiving
    frames, only they are silent (audio) or black (video).
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True
        source.on("ended", self.stop)

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return blank_frame(frame)


class SwitchableTrack(MediaStreamTrack):
    """Outgoing video track whose source can be swapped under a running sender.

    An RTP sender keeps reading one track for the life of the connection and
    stops for good once that track ends, so a link hands its sender this
    track once and later swaps only ``source``.  A ``recv`` blocked on the old
    source moves over to the new one.  Without a source (none set, or the
    current one ended) ``recv`` waits for the next ``switch``.
    """

    kind = "video"

    def __init__(self, source: MediaStreamTrack | None = None):
        super().__init__()
        self.source = source
        self._switched = asyncio.Event()

    def switch(self, source: MediaStreamTrack | None) -> None:
        """Feed frames from *source* from now on and stop the previous one."""
        old, self.source = self.source, source
        self._switched.set()
        if old is not source:
            _stop_quietly(old)

    async def recv(self):
        while True:
            if self.readyState != "live":
                raise MediaStreamError
            source = self.source
            self._switched.clear()
            if source is None:
                await self._switched.wait()
                continue
            frame = await self._next_frame(source)
            if frame is not None:
                return frame

    async def _next_frame(self, source: MediaStreamTrack):
        """One frame from *source*, or None if it was switched away or ended."""
        pending = asyncio.ensure_future(source.recv())
        switched = asyncio.ensure_future(self._switched.wait())
        try:
            await asyncio.wait({pending, switched}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            switched.cancel()
            if not pending.done():
                pending.cancel()
        if pending.cancelled():
            return None
        try:
            return pending.result()
        except MediaStreamError:
            if self.source is source:
                log.info("Outgoing video source ended, waiting for a replacement")
                self.source = None
            return None

    def stop(self):
        super().stop()
        self._switched.set()
        source, self.source = self.source, None
        _stop_quietly(source)


class LevelMeterTrack(MediaStreamTrack):
    """Pass-through audio track that reports speaking / silent transitions.

    Levels are int16 RMS.  Speaking starts above ``rms_start`` and stops
    below ``rms_stop``; the gap keeps the indicator from flickering.
    """

    kind = "audio"

    def __init__(self, source: MediaStreamTrack, on_change,
                 rms_start: int = SPEAK_RMS_START, rms_stop: int = SPEAK_RMS_STOP):
        super().__init__()
        self.source = source
        self.speaking = False
        self._on_change = on_change
        self._rms_start = rms_start
        self._rms_stop = rms_stop
        source.on("ended", self.stop)

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        frame = await self.source.recv()
        self.feed(frame.to_ndarray())
        return frame

    def feed(self, samples: np.ndarray) -> None:
        if samples.size == 0:
            return
        data = samples.astype(np.float32)
        if samples.dtype.kind == "f":
            data *= 32768.0                 # planar float decoders yield -1..1
        rms = float(np.sqrt(np.mean(np.square(data))))

        if not self.speaking and rms >= self._rms_start:
            self.speaking = True
            self._on_change(True)
        elif self.speaking and rms < self._rms_stop:
            self.speaking = False
            self._on_change(False)


class MicrophoneTrack(MediaStreamTrack):
    """Microphone capture through sounddevice (PortAudio).

    The PortAudio callback thread hands blocks to the event loop; when the
    loop falls behind, the oldest block is dropped.
    """

    kind = "audio"

    def __init__(self, loop: asyncio.AbstractEventLoop,
                 sample_rate: int = SAMPLE_RATE, block_size: int = BLOCK_SIZE,
                 device=None):
        super().__init__()
        import sounddevice as sd

        self._owner_loop = loop
        self._rate = sample_rate
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=50)
        self._pts = 0
        self._stream = sd.InputStream(
            samplerate=sample_rate,
            channels=1,
            dtype="int16",
            blocksize=block_size,
            device=device,
            callback=self._in_cb,
        )
        self._stream.start()

    # -- PortAudio thread ----------------------------------------------------

    def _in_cb(self, indata, frames, time_info, status):
        try:
            self._owner_loop.call_soon_threadsafe(self._push, indata.copy())
        except RuntimeError:
            pass   # loop already closed

    # -- event loop ----------------------------------------------------------

    def _push(self, block: np.ndarray):
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(block)

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        block = await self._queue.get()
        frame = av.AudioFrame.from_ndarray(block.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = self._rate
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, self._rate)
        self._pts += block.shape[0]
        return frame

    def stop(self):
        super().stop()
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                log.debug("Error closing microphone stream: %s", e)


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------
def _default_camera() -> tuple[str, str, dict]:
    if sys.platform == "darwin":
        return "default:none", "avfoundation", {"framerate": "30", "video_size": "640x480"}
    if sys.platform == "win32":
        return "video=Integrated Camera", "dshow", {"video_size": "640x480"}
    return "/dev/video0", "v4l2", {"framerate": "30", "video_size": "640x480"}


def _default_screen() -> tuple[str, str, dict]:
    if sys.platform == "darwin":
        return "1:none", "avfoundation", {"framerate": "15", "capture_cursor": "1"}
    if sys.platform == "win32":
        return "desktop", "gdigrab", {"framerate": "15"}
    return os.environ.get("DISPLAY", ":0"), "x11grab", {"framerate": "15",
                                                       "video_size": "1280x720"}


class CaptureDevices:
    """Opens local capture devices.

    Every opener returns a live track; stopping the track releases the
    device.  Opening happens in a worker thread since PortAudio and FFmpeg
    block while the OS grants access.
    """

    def __init__(self, sample_rate: int = SAMPLE_RATE, block_size: int = BLOCK_SIZE,
                 microphone=None, camera: tuple[str, str, dict] | None = None,
                 screen: tuple[str, str, dict] | None = None):
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.microphone = microphone
        self.camera = camera or _default_camera()
        self.screen = screen or _default_screen()

    async def open_microphone(self) -> MediaStreamTrack:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.to_thread(
                MicrophoneTrack, loop, self.sample_rate, self.block_size, self.microphone)
        except Exception as e:
            raise DeviceUnavailable(f"microphone: {e}") from e

    async def open_camera(self) -> MediaStreamTrack:
        try:
            player = await asyncio.to_thread(self._player, *self.camera)
        except Exception as e:
            raise DeviceUnavailable(f"camera {self.camera[0]}: {e}") from e
        if player.video is None:
            raise DeviceUnavailable(f"camera {self.camera[0]} has no video stream")
        return player.video

    async def open_screen(self) -> MediaStreamTrack:
        try:
            player = await asyncio.to_thread(self._player, *self.screen)
        except Exception as e:
            raise UserCancelled(f"screen capture {self.screen[0]}: {e}") from e
        if player.video is None:
            raise UserCancelled("screen capture produced no video stream")
        return player.video

    @staticmethod
    def _player(source: str, fmt: str, options: dict) -> MediaPlayer:
        return MediaPlayer(source, format=fmt, options=options)


# ---------------------------------------------------------------------------
# Media Source
# ---------------------------------------------------------------------------
@dataclass
class LocalStream:
    audio: GatedTrack
    video: GatedTrack | None = None

    @property
    def tracks(self) -> list[MediaStreamTrack]:
        return [t for t in (self.audio, self.video) if t is not None]


def _stop_opened(fut: asyncio.Future):
    """Done-callback for an open that finished after its caller gave up."""
    if fut.cancelled() or fut.exception() is not None:
        return
    log.info("Releasing %s opened after cancellation", fut.result().kind)
    _stop_quietly(fut.result())


class MediaSource(AsyncIOEventEmitter):
    """Local capture for one call session.

    Acquired at most once and released exactly once.  Emits
    ``screenshareended`` when the screen capture stops on its own, so the
    session can put the camera back on every link.
    """

    def __init__(self, devices: CaptureDevices | None = None):
        super().__init__()
        self._devices = devices or CaptureDevices()
        self._relay = MediaRelay()
        self._device_tracks: list[MediaStreamTrack] = []
        self._stream: LocalStream | None = None
        self._screen: MediaStreamTrack | None = None
        self._acquired = False
        self._released = False

    @property
    def stream(self) -> LocalStream | None:
        return self._stream

    @property
    def released(self) -> bool:
        return self._released

    @property
    def screen_sharing(self) -> bool:
        return self._screen is not None

    # -- lifecycle -----------------------------------------------------------

    async def acquire(self, kind: CallKind) -> LocalStream:
        if self._released:
            raise SessionEnded("media source already released")
        if self._acquired:
            raise CallError("media source already acquired")
        self._acquired = True

        opened: list[MediaStreamTrack] = []
        try:
            opened.append(await self._open(self._devices.open_microphone, "microphone"))
            if kind is CallKind.VIDEO:
                opened.append(await self._open(self._devices.open_camera, "camera"))
        except BaseException:
            for track in opened:
                _stop_quietly(track)
            raise

        self._device_tracks = opened
        video = GatedTrack(opened[1]) if len(opened) > 1 else None
        self._stream = LocalStream(audio=GatedTrack(opened[0]), video=video)
        log.info("Local media acquired (%s)", ", ".join(t.kind for t in opened))
        return self._stream

    async def _open(self, opener, what: str) -> MediaStreamTrack:
        fut = asyncio.ensure_future(opener())
        try:
            track = await asyncio.shield(fut)
        except asyncio.CancelledError:
            fut.add_done_callback(_stop_opened)
            raise
        if self._released:
            _stop_quietly(track)
            raise SessionEnded(f"{what} opened after the media source was released")
        return track

    def release(self):
        """Stop every local track and return the devices; safe to call twice."""
        if self._released:
            return
        self._released = True
        self.stop_screen_share()
        if self._stream is not None:
            for track in self._stream.tracks:
                _stop_quietly(track)
        for track in self._device_tracks:
            _stop_quietly(track)
        self._device_tracks = []
        log.info("Local media released")

    # -- controls ------------------------------------------------------------

    def toggle_track(self, kind: str) -> bool:
        """Flip the enabled flag of the local audio / video track."""
        if self._stream is None or self._released:
            raise CallError("no local media")
        track = self._stream.audio if kind == "audio" else self._stream.video
        if track is None:
            raise CallError(f"no local {kind} track")
        track.enabled = not track.enabled
        log.debug("Local %s %s", kind, "enabled" if track.enabled else "disabled")
        return track.enabled

    def outgoing_track(self, kind: str) -> MediaStreamTrack | None:
        """A fresh relay subscription for one peer link, or None."""
        if self._stream is None or self._released:
            return None
        if kind == "audio":
            source = self._stream.audio
        else:
            source = self._screen if self._screen is not None else self._stream.video
        if source is None:
            return None
        return self._relay.subscribe(source, buffered=False)

    async def start_screen_share(self) -> MediaStreamTrack:
        if self._stream is None or self._released:
            raise CallError("no local media")
        if self._screen is not None:
            raise CallError("screen share already running")

        track = await self._devices.open_screen()
        if self._released:
            _stop_quietly(track)
            raise SessionEnded("screen capture opened after the media source was released")
        self._screen = track
        track.on("ended", self._on_screen_ended)
        log.info("Screen share started")
        return track

    def stop_screen_share(self) -> bool:
        """Stop sharing locally; returns False when nothing was shared."""
        track, self._screen = self._screen, None
        if track is None:
            return False
        track.remove_listener("ended", self._on_screen_ended)
        _stop_quietly(track)
        log.info("Screen share stopped")
        return True

    def _on_screen_ended(self):
        if self._screen is None:
            return
        self._screen = None
        log.info("Screen share ended by the capture source")
        self.emit("screenshareended")
