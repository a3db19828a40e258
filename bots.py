#!/usr/bin/env python3
"""
Call Test Bots
==============
Spawns N headless participants that register with the relay, accept every
incoming call and play audio clips into it.  One of them can also place a
call, which makes it easy to exercise a group call from a single machine.

Usage:
    python bots.py                                    # 3 bots, wait for calls
    python bots.py --count 2 --call alice             # bot-1 calls alice
    python bots.py --call alice,bob --video           # video call with test pattern
    python bots.py --addr 192.168.1.5:9753 --voices-dir ./clips
"""

import argparse
import asyncio
import fractions
import logging
import os
import random
import uuid

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from callcore import (
    CallConfig,
    CallKind,
    CallSessionManager,
    CaptureDevices,
    Participant,
    UserCancelled,
    WebSocketSignaling,
    configure_logging,
    format_duration,
)
from callcore.config import BLOCK_SIZE, SAMPLE_RATE

log = logging.getLogger("bots")

VIDEO_SIZE = (320, 240)
VIDEO_FPS  = 15


AUDIO_EXTENSIONS = (".ogg", ".wav", ".mp3", ".flac", ".opus", ".m4a", ".aac")
TONE_LENGTHS = (2.0, 1.5, 2.5, 1.8, 2.2)   # seconds


# ---------------------------------------------------------------------------
# Voice clips
# ---------------------------------------------------------------------------
def decode_clip(path: str) -> np.ndarray:
    """Decode an audio file into one mono int16 buffer at the call sample rate."""
    resampler = av.AudioResampler(format="s16", layout="mono", rate=SAMPLE_RATE)
    with av.open(path) as container:
        blocks = [out.to_ndarray().ravel()
                  for frame in container.decode(audio=0)
                  for out in resampler.resample(frame)]
    if not blocks:
        raise ValueError(f"{path} contains no audio")
    return np.concatenate(blocks).astype(np.int16)


def clips_from_dir(dirpath: str) -> list[np.ndarray]:
    names = sorted(n for n in os.listdir(dirpath) if n.lower().endswith(AUDIO_EXTENSIONS))
    if not names:
        raise FileNotFoundError(f"no audio clips in {dirpath}")
    log.info("Loading %d clip(s) from %s", len(names), dirpath)
    return [decode_clip(os.path.join(dirpath, n)) for n in names]


def tone_clips(freq: float, amp: float = 0.25) -> list[np.ndarray]:
    """Sine bursts of varying length, for bots without voice files."""
    clips = []
    for seconds in TONE_LENGTHS:
        t = np.arange(int(SAMPLE_RATE * seconds)) / SAMPLE_RATE
        clips.append((amp * 32767 * np.sin(2 * np.pi * freq * t)).astype(np.int16))
    return clips


def deal_clips(clips: list[np.ndarray], count: int) -> list[list[np.ndarray]]:
    """Deal clips round-robin; a bot left empty-handed gets the whole set."""
    return [clips[i::count] or list(clips) for i in range(count)]


# ---------------------------------------------------------------------------
# Synthetic capture tracks
# ---------------------------------------------------------------------------
class ClipTrack(MediaStreamTrack):
    """Plays PCM clips back to back with a short pause between them.

    Frames are paced on the wall clock so cumulative sleep drift never
    lets the send rate fall behind the playback rate.
    """

    kind = "audio"

    def __init__(self, clips: list[np.ndarray]):
        super().__init__()
        self._clips = clips
        self._clip_idx = 0
        self._pcm = np.zeros(0, dtype=np.int16)
        self._offset = 0
        self._pts = 0
        self._t0: float | None = None

    def _next_pcm(self):
        clip = self._clips[self._clip_idx % len(self._clips)]
        self._clip_idx += 1
        silence = np.zeros(int(SAMPLE_RATE * random.uniform(1.5, 4.0)), dtype=np.int16)
        self._pcm = np.concatenate([clip, silence])
        self._offset = 0

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError

        loop = asyncio.get_running_loop()
        if self._t0 is None:
            self._t0 = loop.time()
        # Sleep until the *absolute* target time for this chunk
        delay = self._t0 + self._pts / SAMPLE_RATE - loop.time()
        if delay > 0:
            await asyncio.sleep(delay)

        if self._offset >= len(self._pcm):
            self._next_pcm()
        chunk = self._pcm[self._offset:self._offset + BLOCK_SIZE]
        chunk = np.pad(chunk, (0, BLOCK_SIZE - len(chunk)))
        self._offset += BLOCK_SIZE

        frame = av.AudioFrame.from_ndarray(chunk.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = SAMPLE_RATE
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, SAMPLE_RATE)
        self._pts += BLOCK_SIZE
        return frame


class PatternTrack(MediaStreamTrack):
    """Scrolling colour gradient standing in for a camera."""

    kind = "video"

    def __init__(self, hue: int):
        super().__init__()
        self._hue = hue
        self._n = 0
        self._t0: float | None = None

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError

        loop = asyncio.get_running_loop()
        if self._t0 is None:
            self._t0 = loop.time()
        delay = self._t0 + self._n / VIDEO_FPS - loop.time()
        if delay > 0:
            await asyncio.sleep(delay)

        w, h = VIDEO_SIZE
        ramp = (np.arange(w, dtype=np.uint16) + self._n * 4) % 256
        img = np.zeros((h, w, 3), dtype=np.uint8)
        img[:, :, 0] = ramp.astype(np.uint8)
        img[:, :, 1] = self._hue
        img[:, :, 2] = 255 - ramp.astype(np.uint8)

        frame = av.VideoFrame.from_ndarray(img, format="rgb24")
        frame.pts = self._n
        frame.time_base = fractions.Fraction(1, VIDEO_FPS)
        self._n += 1
        return frame


class BotDevices(CaptureDevices):
    """Capture devices backed by clips and a test pattern instead of hardware."""

    def __init__(self, clips: list[np.ndarray], hue: int):
        super().__init__()
        self.clips = clips
        self.hue = hue

    async def open_microphone(self) -> MediaStreamTrack:
        return ClipTrack(self.clips)

    async def open_camera(self) -> MediaStreamTrack:
        return PatternTrack(self.hue)

    async def open_screen(self) -> MediaStreamTrack:
        raise UserCancelled("bots do not share their screen")


# ---------------------------------------------------------------------------
# Single bot coroutine
# ---------------------------------------------------------------------------
async def run_bot(address: str, bot_id: str, clips: list[np.ndarray], hue: int,
                  call_to: list[str] | None = None, kind: CallKind = CallKind.AUDIO):
    """Register one bot, answer every call, and optionally place one."""

    signaling = WebSocketSignaling(address, bot_id)
    manager = CallSessionManager(bot_id, signaling, config=CallConfig.from_env(),
                                 devices=BotDevices(clips, hue))
    tasks: set[asyncio.Task] = set()

    def spawn(coro):
        task = asyncio.ensure_future(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def accept(call):
        try:
            await manager.accept_call(call.session_id)
        except Exception as e:
            log.error("[%s] could not accept %s: %s", bot_id, call.session_id, e)

    @manager.on("incoming")
    def on_incoming(call):
        log.info("[%s] incoming %s call from %s", bot_id, call.kind.value, ", ".join(call.callers))
        if manager.current_session() is not None:
            manager.decline_call(call.session_id)
            return
        spawn(accept(call))

    @manager.on("callstarted")
    def on_started(session):
        @session.on("statechange")
        def on_state(s, state):
            log.info("[%s] call %s is %s", bot_id, s.session_id, state.value)

        @session.on("participantchange")
        def on_participant(s, p):
            log.debug("[%s]   %s link=%s speaking=%s", bot_id, p.id, p.link_state.value, p.speaking)

        @session.on("track")
        def on_track(s, pid, track):
            # Nobody listens; keep pulling frames so the receiver does not stall.
            spawn(drain(track))

    @manager.on("callended")
    def on_ended(session, record):
        log.info("[%s] call %s ended (%s) after %s%s", bot_id, record.session_id,
                 record.reason, format_duration(record.duration),
                 "  [failed]" if record.failed else "")

    log.info("[%s] connecting …", bot_id)
    try:
        await signaling.connect()
        if call_to:
            session_id = uuid.uuid4().hex[:12]
            roster = [Participant(pid) for pid in call_to]
            await manager.start_call(session_id, roster, kind)
        await asyncio.Future()  # run forever
    except asyncio.CancelledError:
        pass
    except Exception as e:
        log.error("[%s] error: %s", bot_id, e)
    finally:
        await manager.close()
        await signaling.close()
        for task in list(tasks):
            task.cancel()


async def drain(track: MediaStreamTrack):
    try:
        while True:
            await track.recv()
    except MediaStreamError:
        pass


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
async def main():
    parser = argparse.ArgumentParser(description="Call test bots")
    parser.add_argument("--addr",    default="localhost:9753", help="Relay address")
    parser.add_argument("--count",   type=int, default=3,      help="Number of bots")
    parser.add_argument("--prefix",  default="bot",            help="Bot id prefix")
    parser.add_argument("--call",    default="",
                        help="Comma-separated ids the first bot calls once connected")
    parser.add_argument("--video",   action="store_true",      help="Place a video call")
    parser.add_argument("--voices-dir", type=str, default=None,
                        help="Path to a folder of audio files (ogg/wav/mp3/…) to play instead of tones")
    parser.add_argument("--debug",   action="store_true",      help="Verbose logging")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.debug else logging.INFO)
    count = max(1, args.count)

    if args.voices_dir:
        per_bot = deal_clips(clips_from_dir(args.voices_dir), count)
    else:
        per_bot = [tone_clips(300 + i * 150) for i in range(count)]

    call_to = [pid.strip() for pid in args.call.split(",") if pid.strip()]
    kind = CallKind.VIDEO if args.video else CallKind.AUDIO

    log.info("Launching %d bots against %s", count, args.addr)
    await asyncio.gather(*(
        run_bot(args.addr, f"{args.prefix}-{i + 1}", per_bot[i], hue=(i * 70) % 256,
                call_to=call_to if i == 0 else None, kind=kind)
        for i in range(count)
    ))


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log.info("Bots stopped.")
