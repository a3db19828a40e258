"""
In-memory stand-ins for the parts of a call that need a network or hardware:
the RTCPeerConnection, the signaling relay and the capture devices.
"""

import asyncio
import fractions

import av
import numpy as np
from aiortc import MediaStreamTrack, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError
from pyee.asyncio import AsyncIOEventEmitter

from callcore import (
    DeviceUnavailable,
    Envelope,
    IceCandidate,
    MediaSource,
    SignalingChannel,
    TransportError,
    UserCancelled,
)


def candidate(port: int, mid: str = "0") -> IceCandidate:
    return IceCandidate(f"candidate:1 1 udp 2130706431 192.168.1.2 {port} typ host", mid, 0)


AUDIO_OFFER = "v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\nm=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
VIDEO_OFFER = AUDIO_OFFER + "m=video 9 UDP/TLS/RTP/SAVPF 96\r\n"

CAMERA_PIXEL = 200
SCREEN_PIXEL = 50


async def settle(rounds: int = 20):
    """Let every ready callback and spawned task run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------
class FakeTrack(MediaStreamTrack):
    """Paced synthetic source; ``level`` is the sample value, or the pixel value for video."""

    def __init__(self, kind: str = "audio", level: int = 0, interval: float = 0.001):
        super().__init__()
        self.kind = kind
        self.level = level
        self.interval = interval
        self._pts = 0

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        await asyncio.sleep(self.interval)
        if self.kind == "audio":
            samples = np.full((1, 960), self.level, dtype=np.int16)
            frame = av.AudioFrame.from_ndarray(samples, format="s16", layout="mono")
            frame.sample_rate = 48000
            frame.time_base = fractions.Fraction(1, 48000)
            self._pts += 960
        else:
            img = np.full((48, 64, 3), self.level or CAMERA_PIXEL, dtype=np.uint8)
            frame = av.VideoFrame.from_ndarray(img, format="rgb24")
            frame.time_base = fractions.Fraction(1, 90000)
            self._pts += 3000
        frame.pts = self._pts
        return frame


class FakeDevices:
    """Capture devices that hand out ``FakeTrack``s.

    ``gate`` (an ``asyncio.Event``) holds every open until it is set, to
    simulate a slow permission prompt.
    """

    def __init__(self, fail_microphone=False, fail_camera=False, deny_screen=False):
        self.fail_microphone = fail_microphone
        self.fail_camera = fail_camera
        self.deny_screen = deny_screen
        self.gate: asyncio.Event | None = None
        self.opened: list[FakeTrack] = []
        self.screens: list[FakeTrack] = []

    async def _open(self, kind: str, fail: bool) -> FakeTrack:
        if self.gate is not None:
            await self.gate.wait()
        if fail:
            raise DeviceUnavailable(f"no {kind} device")
        track = FakeTrack(kind)
        self.opened.append(track)
        return track

    async def open_microphone(self):
        return await self._open("audio", self.fail_microphone)

    async def open_camera(self):
        return await self._open("video", self.fail_camera)

    async def open_screen(self):
        if self.deny_screen:
            raise UserCancelled("permission denied")
        track = FakeTrack("video", level=SCREEN_PIXEL)
        self.screens.append(track)
        return track

    @property
    def live(self) -> list[FakeTrack]:
        return [t for t in self.opened + self.screens if t.readyState == "live"]


class CountingMediaSource(MediaSource):
    def __init__(self, devices):
        super().__init__(devices)
        self.release_calls = 0

    def release(self):
        self.release_calls += 1
        super().release()


# ---------------------------------------------------------------------------
# Peer connection
# ---------------------------------------------------------------------------
class FakeSender:
    def __init__(self, track):
        self.track = track
        self.kind = track.kind
        self.replaced: list = []

    def replaceTrack(self, track):
        self.replaced.append(track)
        self.track = track


class FakePeerConnection(AsyncIOEventEmitter):
    """Records what a ``PeerLink`` does to its RTCPeerConnection.

    ICE gathering is always complete, so descriptions are usable at once.
    ``set_state`` plays the part of the ICE agent.
    """

    def __init__(self):
        super().__init__()
        self.connectionState = "new"
        self.iceGatheringState = "complete"
        self.localDescription = None
        self.remoteDescription = None
        self.senders: list[FakeSender] = []
        self.offers = 0
        self.answers = 0
        self.candidates: list = []
        self.fail_remote = False
        self.closed = False

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def sender(self, kind: str) -> FakeSender | None:
        return next((s for s in self.senders if s.kind == kind), None)

    def _sdp(self) -> str:
        lines = ["v=0", "o=- 1 1 IN IP4 0.0.0.0"]
        lines += [f"m={s.kind} 9 UDP/TLS/RTP/SAVPF 0" for s in self.senders]
        return "\r\n".join(lines) + "\r\n"

    async def createOffer(self):
        self.offers += 1
        return RTCSessionDescription(sdp=self._sdp(), type="offer")

    async def createAnswer(self):
        self.answers += 1
        return RTCSessionDescription(sdp=self._sdp(), type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        if self.fail_remote:
            raise ValueError("remote description rejected")
        self.remoteDescription = description

    async def addIceCandidate(self, cand):
        self.candidates.append(cand)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.set_state("closed")

    def set_state(self, state: str):
        self.connectionState = state
        self.emit("connectionstatechange")


class PCFactory:
    def __init__(self):
        self.created: list[FakePeerConnection] = []

    def __call__(self) -> FakePeerConnection:
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc


# ---------------------------------------------------------------------------
# Signaling
# ---------------------------------------------------------------------------
class FakeSignaling(SignalingChannel):
    def __init__(self, local_id: str = "me"):
        super().__init__()
        self.local_id = local_id
        self.sent: list[tuple] = []
        self.fail = False
        self.switchboard: Switchboard | None = None

    async def send(self, session_id, target_id, message):
        if self.fail:
            raise TransportError("relay unreachable")
        self.sent.append((session_id, target_id, message))
        if self.switchboard is not None:
            self.switchboard.route(session_id, self.local_id, target_id, message)

    def sent_to(self, target_id: str, kind=None) -> list:
        return [m for _, t, m in self.sent
                if t == target_id and (kind is None or isinstance(m, kind))]

    def receive(self, session_id: str, from_id: str, message):
        self.deliver(Envelope(session_id, from_id, self.local_id, message))


class Switchboard:
    """Wires several ``FakeSignaling`` channels together, like the relay does."""

    def __init__(self):
        self.channels: dict[str, FakeSignaling] = {}

    def join(self, participant_id: str) -> FakeSignaling:
        channel = FakeSignaling(participant_id)
        channel.switchboard = self
        self.channels[participant_id] = channel
        return channel

    def route(self, session_id, from_id, to_id, message):
        target = self.channels.get(to_id)
        if target is not None:
            asyncio.get_running_loop().call_soon(target.receive, session_id, from_id, message)
