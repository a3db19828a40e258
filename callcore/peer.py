"""
Peer Link: one negotiated media path to one remote participant.
"""

import asyncio
import logging

from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

from .config import CallConfig
from .errors import NegotiationError, TransportError
from .media import LevelMeterTrack, SwitchableTrack
from .models import PEER_TRANSITIONS, RTC_STATE_MAP, PeerState
from .signaling import Answer, IceCandidate, Offer, SignalingChannel

log = logging.getLogger("callcore.peer")


def parse_candidate(message: IceCandidate):
    """Turn a signaling candidate into an aiortc ``RTCIceCandidate``."""
    line = message.candidate
    if line.startswith("candidate:"):
        line = line.split(":", 1)[1]
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, ValueError, IndexError) as e:
        raise NegotiationError(f"malformed candidate {message.candidate!r}") from e
    candidate.sdpMid = message.sdp_mid
    candidate.sdpMLineIndex = message.sdp_mline_index
    return candidate


class PeerLink(AsyncIOEventEmitter):
    """Wraps one ``RTCPeerConnection``.

    Events:

    * ``statechange(link, state)`` on every accepted state transition
    * ``track(link, track)`` / ``trackended(link, track)`` for remote media
    * ``speaking(link, bool)`` from the remote audio level meter

    Inbound signaling is serialised through a FIFO lock so offers, answers
    and candidates for this link are applied in arrival order.  Candidates
    that arrive before both descriptions are set wait in ``pending_candidates``.
    """

    def __init__(self, session_id: str, participant_id: str,
                 signaling: SignalingChannel, config: CallConfig | None = None,
                 pc_factory=None):
        super().__init__()
        self.session_id = session_id
        self.participant_id = participant_id
        self.state = PeerState.NEW
        self.local_tracks: list = []
        self.remote_tracks: list = []
        self.pending_candidates: list[IceCandidate] = []
        self.roster: tuple[str, ...] = ()   # announced with every offer
        self._signaling = signaling
        self._config = config or CallConfig()
        self._pc_factory = pc_factory or self._default_pc
        self._pc = None
        self._video: SwitchableTrack | None = None
        self._signal_lock = asyncio.Lock()
        self._timeout: asyncio.TimerHandle | None = None
        self._closed = False

    def __repr__(self):
        return f"<PeerLink {self.participant_id} {self.state.value}>"

    def _default_pc(self) -> RTCPeerConnection:
        return RTCPeerConnection(configuration=self._config.rtc_configuration())

    @property
    def pc(self):
        return self._pc

    @property
    def video_track(self) -> SwitchableTrack | None:
        """The track the video sender reads; its source follows camera / screen."""
        return self._video

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    @property
    def ready(self) -> bool:
        """Both session descriptions are in place, candidates can be applied."""
        pc = self._pc
        return (pc is not None
                and pc.localDescription is not None
                and pc.remoteDescription is not None)

    # -- setup ---------------------------------------------------------------

    def open(self, local_tracks) -> "PeerLink":
        if self._pc is not None:
            raise RuntimeError(f"peer link {self.participant_id} already opened")

        pc = self._pc_factory()
        self._pc = pc
        for track in local_tracks:
            if track is None:
                continue
            if track.kind == "video":
                track = self._video = SwitchableTrack(track)
            pc.addTrack(track)
            self.local_tracks.append(track)

        @pc.on("connectionstatechange")
        def on_conn_state():
            state = RTC_STATE_MAP.get(pc.connectionState)
            log.info("  RTC state: %-12s  (%s)", pc.connectionState, self.participant_id)
            if state is not None:
                self._set_state(state)

        @pc.on("track")
        def on_track(track):
            log.info("  remote %s track  (%s)", track.kind, self.participant_id)
            if track.kind == "audio":
                track = LevelMeterTrack(
                    track,
                    on_change=lambda speaking: self.emit("speaking", self, speaking),
                    rms_start=self._config.speak_rms_start,
                    rms_stop=self._config.speak_rms_stop,
                )
            self.remote_tracks.append(track)

            @track.on("ended")
            def on_ended():
                if track in self.remote_tracks:
                    self.remote_tracks.remove(track)
                    self.emit("trackended", self, track)

            self.emit("track", self, track)

        loop = asyncio.get_running_loop()
        self._timeout = loop.call_later(self._config.negotiation_timeout,
                                        self._on_negotiation_timeout)
        log.info("  new PeerConnection for %s (%d local tracks)",
                 self.participant_id, len(self.local_tracks))
        return self

    # -- state ---------------------------------------------------------------

    def _set_state(self, state: PeerState):
        if state is self.state:
            return
        if state not in PEER_TRANSITIONS[self.state]:
            log.debug("  ignoring %s -> %s  (%s)", self.state.value, state.value,
                      self.participant_id)
            return
        self.state = state
        if state is PeerState.CONNECTED or state.terminal:
            self._cancel_timeout()
        if state is PeerState.FAILED:
            log.warning("  peer link FAILED for %s", self.participant_id)
        self.emit("statechange", self, state)

    def _cancel_timeout(self):
        if self._timeout is not None:
            self._timeout.cancel()
            self._timeout = None

    def _on_negotiation_timeout(self):
        self._timeout = None
        if self.state in (PeerState.NEW, PeerState.CHECKING):
            log.warning("  negotiation TIMED OUT for %s after %.0fs",
                        self.participant_id, self._config.negotiation_timeout)
            self._set_state(PeerState.FAILED)

    def _fail(self, what: str, exc: Exception) -> NegotiationError:
        log.warning("  %s failed for %s: %s", what, self.participant_id, exc)
        self._set_state(PeerState.FAILED)
        return NegotiationError(f"{what} with {self.participant_id}: {exc}")

    # -- negotiation ---------------------------------------------------------

    async def create_offer(self) -> str:
        """Create the local offer and send it to the remote participant."""
        async with self._signal_lock:
            self._check_open()
            try:
                offer = await self._pc.createOffer()
                await self._set_local(offer)
            except Exception as e:
                raise self._fail("offer", e) from e
            sdp = self._pc.localDescription.sdp
            await self._send(Offer(sdp, participants=self.roster))
            return sdp

    async def handle_remote_offer(self, sdp: str) -> str:
        """Apply a remote offer and answer it; returns the answer SDP."""
        async with self._signal_lock:
            self._check_open()
            try:
                await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
                answer = await self._pc.createAnswer()
                await self._set_local(answer)
            except Exception as e:
                raise self._fail("answering offer", e) from e
            answer_sdp = self._pc.localDescription.sdp
            await self._send(Answer(answer_sdp))
            await self._flush_candidates()
            return answer_sdp

    async def handle_remote_answer(self, sdp: str) -> None:
        async with self._signal_lock:
            self._check_open()
            try:
                await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
            except Exception as e:
                raise self._fail("applying answer", e) from e
            await self._flush_candidates()

    async def handle_remote_candidate(self, candidate: IceCandidate) -> None:
        async with self._signal_lock:
            if self._closed:
                return
            if not self.ready:
                self.pending_candidates.append(candidate)
                log.debug("  queued early candidate (%d pending)  (%s)",
                          len(self.pending_candidates), self.participant_id)
                return
            await self._apply_candidate(candidate)

    async def _flush_candidates(self):
        queued, self.pending_candidates = self.pending_candidates, []
        if queued:
            log.debug("  replaying %d queued candidates  (%s)", len(queued), self.participant_id)
        for candidate in queued:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, message: IceCandidate):
        try:
            await self._pc.addIceCandidate(parse_candidate(message))
        except Exception as e:
            # One bad candidate does not sink the link; ICE tries the others.
            log.warning("  dropping candidate from %s: %s", self.participant_id, e)

    async def _set_local(self, description):
        """Set the local description and wait for ICE gathering to finish."""
        pc = self._pc
        await pc.setLocalDescription(description)
        if pc.iceGatheringState == "complete":
            return

        done = asyncio.Event()

        @pc.on("icegatheringstatechange")
        def _on_ice():
            log.debug("  ICE gathering: %s  (%s)", pc.iceGatheringState, self.participant_id)
            if pc.iceGatheringState == "complete":
                done.set()

        try:
            await asyncio.wait_for(done.wait(), timeout=self._config.ice_gathering_timeout)
        except asyncio.TimeoutError as e:
            raise NegotiationError(
                f"ICE gathering timed out after {self._config.ice_gathering_timeout:.0f}s") from e
        finally:
            pc.remove_listener("icegatheringstatechange", _on_ice)

    async def _send(self, message):
        try:
            await self._signaling.send(self.session_id, self.participant_id, message)
        except TransportError as e:
            # The negotiation timeout takes it from here.
            log.warning("  signaling to %s failed: %s", self.participant_id, e)

    def _check_open(self):
        if self._pc is None:
            raise NegotiationError(f"peer link {self.participant_id} not opened")
        if self._closed or self.state.terminal:
            raise NegotiationError(f"peer link {self.participant_id} is {self.state.value}")

    # -- tracks --------------------------------------------------------------

    async def replace_outgoing_video_track(self, track) -> bool:
        """Swap the outgoing video track.

        The video sender keeps reading the same ``SwitchableTrack``; only its
        source changes, so no renegotiation is needed.  Without a video
        sender (audio call) one is added and the link renegotiated.  Returns
        True when a renegotiation was needed.
        """
        self._check_open()
        if self._video is not None:
            self._video.switch(track)
            log.info("  outgoing video replaced  (%s)", self.participant_id)
            return False

        if track is None:
            return False
        self._video = SwitchableTrack(track)
        self._pc.addTrack(self._video)
        self.local_tracks.append(self._video)
        log.info("  no video sender, renegotiating  (%s)", self.participant_id)
        await self.create_offer()
        return True

    # -- teardown ------------------------------------------------------------

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_timeout()
        self.pending_candidates = []
        for track in self.local_tracks:
            try:
                track.stop()
            except Exception as e:
                log.debug("Error stopping local track for %s: %s", self.participant_id, e)
        if self._pc is not None:
            try:
                await self._pc.close()
            except Exception as e:
                log.debug("Error closing PC for %s: %s", self.participant_id, e)
        self._set_state(PeerState.CLOSED)
        log.info("  peer link closed  (%s)", self.participant_id)
