"""
Call Session: the peer links and local media of one ongoing call.

State machine::

    idle ──> connecting ──> active ──> ended
      │           │                      ^
      └───────────┴──────────────────────┘

* ``idle -> connecting`` once local media is acquired and links are opened
* ``connecting -> active`` when the first link reaches ``connected``
* ``connecting -> ended`` on ``end()``, connect timeout, or every link terminal
* ``active -> ended`` on ``end()`` or when no link is ``connected`` any more;
  a link that is only ``disconnected`` gets ``config.disconnect_grace`` to recover
"""

import asyncio
import logging
import time
from datetime import datetime, timezone

from pyee.asyncio import AsyncIOEventEmitter

from .config import CallConfig
from .errors import CallError, DeviceUnavailable, NegotiationError, SessionEnded
from .media import MediaSource
from .models import CallKind, CallRecord, CallState, Participant, PeerState, format_duration
from .peer import PeerLink
from .signaling import Answer, Offer, SignalingChannel, SignalingMessage

log = logging.getLogger("callcore.session")


class CallSession(AsyncIOEventEmitter):
    """Owns every ``PeerLink`` of one call plus the local ``MediaSource``.

    Events (all carry the session first):

    * ``statechange(session, CallState)``
    * ``participantchange(session, Participant)`` on link state / media /
      speaking updates
    * ``participantleft(session, Participant)``
    * ``track(session, participant_id, track)`` for remote media to render
    * ``localmedia(session, kind, enabled)`` after mute / camera toggles
    * ``screenshare(session, bool)``
    * ``ended(session, CallRecord)`` once teardown is complete
    """

    def __init__(self, session_id: str, local_id: str, roster, kind: CallKind,
                 signaling: SignalingChannel, media: MediaSource | None = None,
                 config: CallConfig | None = None, pc_factory=None,
                 direction: str = "outgoing", clock=time.monotonic):
        super().__init__()
        self.session_id = session_id
        self.local_id = local_id
        self.kind = CallKind(kind)
        self.direction = direction
        self.state = CallState.IDLE
        self.signaling = signaling
        self.media = media or MediaSource()
        self.config = config or CallConfig()
        self.participants: dict[str, Participant] = {p.id: p for p in roster}
        self.links: dict[str, PeerLink] = {}

        me = self.participants.setdefault(local_id, Participant(local_id))
        me.audio_enabled = True
        me.video_enabled = self.kind is CallKind.VIDEO
        self._everyone = dict(self.participants)

        self._pc_factory = pc_factory
        self._clock = clock
        self._started_mono: float | None = None
        self._ended_mono: float | None = None
        self._started_at: datetime | None = None
        self._reached_active = False
        self._early: list[tuple[str, SignalingMessage]] = []
        self._tasks: set[asyncio.Task] = set()
        self._acquire_task: asyncio.Task | None = None
        self._connect_timer: asyncio.TimerHandle | None = None
        self._grace_timer: asyncio.TimerHandle | None = None
        self._record: CallRecord | None = None
        self._teardown_task: asyncio.Task | None = None

        self.media.on("screenshareended", self._on_screen_share_ended)

    def __repr__(self):
        return f"<CallSession {self.session_id} {self.kind.value} {self.state.value}>"

    # -- views ---------------------------------------------------------------

    @property
    def local_participant(self) -> Participant:
        return self.participants[self.local_id]

    @property
    def remote_ids(self) -> list[str]:
        return [pid for pid in self.participants if pid != self.local_id]

    @property
    def record(self) -> CallRecord | None:
        return self._record

    def duration(self) -> float:
        """Seconds since the session started connecting, frozen once it ends."""
        if self._started_mono is None:
            return 0.0
        end = self._ended_mono if self._ended_mono is not None else self._clock()
        return max(0.0, end - self._started_mono)

    def main_participant(self) -> Participant | None:
        """The remote participant to feature: whoever speaks, else the first one."""
        remote = [self.participants[pid] for pid in self.remote_ids]
        return next((p for p in remote if p.speaking), remote[0] if remote else None)

    # -- start ---------------------------------------------------------------

    async def start(self, offer_to=None) -> "CallSession":
        """Acquire local media and open a link to every remote participant.

        ``offer_to`` limits which participants get an offer from this side;
        by default everyone does.  The others are expected to offer first.
        """
        if self.state is CallState.ENDED:
            raise SessionEnded(f"session {self.session_id} already ended")
        if self.state is not CallState.IDLE or self._acquire_task is not None:
            raise CallError(f"session {self.session_id} already started")
        if not self.remote_ids:
            raise CallError("roster has no remote participants")

        log.info("Starting %s call %s with %s", self.kind.value, self.session_id,
                 ", ".join(self.remote_ids))

        self._acquire_task = asyncio.ensure_future(self.media.acquire(self.kind))
        try:
            await self._acquire_task
        except (asyncio.CancelledError, SessionEnded):
            if self.state is CallState.ENDED:
                log.info("Call %s ended while acquiring media", self.session_id)
                return self
            raise
        except DeviceUnavailable as e:
            log.error("Call %s failed: %s", self.session_id, e)
            self.media.release()
            raise
        finally:
            self._acquire_task = None

        if self.state is CallState.ENDED:
            return self

        self._started_mono = self._clock()
        self._started_at = datetime.now(timezone.utc)
        self._set_state(CallState.CONNECTING)

        for pid in self.remote_ids:
            self._open_link(pid)

        loop = asyncio.get_running_loop()
        self._connect_timer = loop.call_later(self.config.connect_timeout,
                                              self._on_connect_timeout)

        early, self._early = self._early, []
        offered_by_them = {pid for pid, msg in early if isinstance(msg, Offer)}
        for from_id, message in early:
            self.dispatch(from_id, message)

        targets = set(self.remote_ids if offer_to is None else offer_to)
        await asyncio.gather(*(
            self._offer(self.links[pid]) for pid in self.remote_ids
            if pid in targets and pid not in offered_by_them
        ))
        return self

    def _open_link(self, pid: str) -> PeerLink:
        link = PeerLink(self.session_id, pid, self.signaling, self.config, self._pc_factory)
        link.roster = tuple(self.participants)
        link.on("statechange", self._on_link_state)
        link.on("track", self._on_remote_track)
        link.on("trackended", self._on_remote_track_ended)
        link.on("speaking", self._on_speaking)
        tracks = [self.media.outgoing_track("audio"), self.media.outgoing_track("video")]
        link.open([t for t in tracks if t is not None])
        self.links[pid] = link
        self.participants[pid].link_state = link.state
        return link

    async def _offer(self, link: PeerLink):
        try:
            await link.create_offer()
        except NegotiationError as e:
            log.warning("  offer to %s failed: %s", link.participant_id, e)

    # -- signaling -----------------------------------------------------------

    def preload(self, messages) -> None:
        """Queue messages that arrived before this session existed.

        They are applied in order as soon as the links are open.
        """
        if self.state is not CallState.IDLE:
            raise CallError("messages can only be preloaded before start")
        self._early.extend((from_id, message) for from_id, message in messages
                           if from_id in self.participants)

    def dispatch(self, from_id: str, message: SignalingMessage) -> None:
        """Schedule handling of one inbound message, preserving arrival order."""
        self._spawn(self.handle_signal(from_id, message))

    async def handle_signal(self, from_id: str, message: SignalingMessage) -> None:
        if self.state is CallState.ENDED:
            log.debug("  dropping %s from %s: call ended", type(message).__name__, from_id)
            return
        if from_id not in self.participants:
            log.warning("  ignoring %s from %s: not in call %s",
                        type(message).__name__, from_id, self.session_id)
            return
        if self.state is CallState.IDLE:
            self._early.append((from_id, message))
            return

        link = self.links.get(from_id)
        if isinstance(message, Offer) and (link is None or link.terminal):
            # A terminal link is never reused; the participant gets a fresh one.
            if link is not None:
                self._spawn(link.close())
            link = self._open_link(from_id)
        if link is None:
            log.debug("  no link for %s, dropping %s", from_id, type(message).__name__)
            return

        try:
            if isinstance(message, Offer):
                await link.handle_remote_offer(message.sdp)
            elif isinstance(message, Answer):
                await link.handle_remote_answer(message.sdp)
            else:
                await link.handle_remote_candidate(message)
        except NegotiationError as e:
            log.warning("  negotiation with %s failed: %s", from_id, e)

    # -- link observation ----------------------------------------------------

    def _is_current(self, link: PeerLink) -> bool:
        return self.links.get(link.participant_id) is link

    def _on_link_state(self, link: PeerLink, state: PeerState):
        if not self._is_current(link):
            return
        participant = self.participants.get(link.participant_id)
        if participant is not None:
            participant.link_state = state
            self.emit("participantchange", self, participant)
        self._reevaluate()

    def _on_remote_track(self, link: PeerLink, track):
        if not self._is_current(link):
            return
        participant = self.participants.get(link.participant_id)
        if participant is not None:
            if track.kind == "audio":
                participant.audio_enabled = True
            elif track.kind == "video":
                participant.video_enabled = True
            self.emit("participantchange", self, participant)
        self.emit("track", self, link.participant_id, track)

    def _on_remote_track_ended(self, link: PeerLink, track):
        participant = self.participants.get(link.participant_id)
        if participant is None or not self._is_current(link):
            return
        if not any(t.kind == track.kind for t in link.remote_tracks):
            if track.kind == "audio":
                participant.audio_enabled = False
                participant.speaking = False
            elif track.kind == "video":
                participant.video_enabled = False
            self.emit("participantchange", self, participant)

    def _on_speaking(self, link: PeerLink, speaking: bool):
        participant = self.participants.get(link.participant_id)
        if participant is not None and self._is_current(link):
            participant.speaking = speaking
            self.emit("participantchange", self, participant)

    def _reevaluate(self):
        connected = any(l.state is PeerState.CONNECTED for l in self.links.values())

        if self.state is CallState.CONNECTING:
            if connected:
                self._reached_active = True
                self._cancel_connect_timer()
                self._set_state(CallState.ACTIVE)
            elif all(l.terminal for l in self.links.values()):
                self._finish("nobody answered")

        elif self.state is CallState.ACTIVE:
            if connected:
                self._cancel_grace_timer()
            elif any(l.state is PeerState.DISCONNECTED for l in self.links.values()):
                if self._grace_timer is None:
                    log.info("Call %s lost every connection, waiting %.0fs for recovery",
                             self.session_id, self.config.disconnect_grace)
                    self._grace_timer = asyncio.get_running_loop().call_later(
                        self.config.disconnect_grace, self._on_grace_expired)
            else:
                self._finish("everyone left")

    def _on_grace_expired(self):
        self._grace_timer = None
        if self.state is CallState.ACTIVE and not any(
                l.state is PeerState.CONNECTED for l in self.links.values()):
            self._finish("everyone left")

    def _cancel_grace_timer(self):
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None

    def _on_connect_timeout(self):
        self._connect_timer = None
        if self.state is CallState.CONNECTING:
            log.warning("Call %s not connected after %.0fs", self.session_id,
                        self.config.connect_timeout)
            self._finish("connect timeout")

    def _cancel_connect_timer(self):
        if self._connect_timer is not None:
            self._connect_timer.cancel()
            self._connect_timer = None

    # -- participants --------------------------------------------------------

    async def remove_participant(self, pid: str) -> None:
        """Drop a participant who left; ends the call when nobody is left."""
        if pid == self.local_id or pid not in self.participants:
            return
        participant = self.participants.pop(pid)
        link = self.links.pop(pid, None)
        log.info("  %s left call %s", pid, self.session_id)
        self.emit("participantleft", self, participant)
        if link is not None:
            await link.close()
        self._reevaluate()

    # -- local media controls ------------------------------------------------

    def _check_live(self):
        if self.state is CallState.ENDED:
            raise SessionEnded(f"session {self.session_id} already ended")
        if self.media.stream is None:
            raise CallError("local media not acquired yet")

    def toggle_mute(self) -> bool:
        """Flip the microphone on / off; returns whether audio is now enabled."""
        self._check_live()
        enabled = self.media.toggle_track("audio")
        self.local_participant.audio_enabled = enabled
        self.emit("localmedia", self, "audio", enabled)
        return enabled

    def toggle_video(self) -> bool:
        self._check_live()
        enabled = self.media.toggle_track("video")
        self.local_participant.video_enabled = enabled
        self.emit("localmedia", self, "video", enabled)
        return enabled

    async def start_screen_share(self) -> None:
        self._check_live()
        await self.media.start_screen_share()
        await self._broadcast_video()
        self.emit("screenshare", self, True)

    async def stop_screen_share(self) -> None:
        if self.state is CallState.ENDED:
            return
        if self.media.stop_screen_share():
            await self._broadcast_video()
            self.emit("screenshare", self, False)

    def _on_screen_share_ended(self):
        if self.state is CallState.ENDED:
            return
        log.info("Screen share of call %s ended, restoring camera", self.session_id)
        self._spawn(self._restore_camera())

    async def _restore_camera(self):
        await self._broadcast_video()
        self.emit("screenshare", self, False)

    async def _broadcast_video(self):
        """Point every live link's outgoing video at the current video source."""
        for link in list(self.links.values()):
            if link.terminal:
                continue
            track = self.media.outgoing_track("video")
            try:
                await link.replace_outgoing_video_track(track)
            except NegotiationError as e:
                log.warning("  video switch for %s failed: %s", link.participant_id, e)
                if track is not None:
                    track.stop()

    # -- teardown ------------------------------------------------------------

    async def end(self, reason: str = "hangup") -> CallRecord:
        """End the call from any state; returns the call record."""
        record = self._finish(reason)
        await self._teardown_task
        return record

    def _finish(self, reason: str) -> CallRecord:
        """Move to ``ended`` synchronously and schedule the teardown."""
        if self._record is not None:
            return self._record

        if self._started_mono is not None:
            self._ended_mono = self._clock()
        self._cancel_connect_timer()
        self._cancel_grace_timer()
        if self._acquire_task is not None and not self._acquire_task.done():
            self._acquire_task.cancel()

        self._record = CallRecord(
            session_id=self.session_id,
            kind=self.kind,
            direction=self.direction,
            participants=[p for pid, p in self._everyone.items() if pid != self.local_id],
            started_at=self._started_at,
            ended_at=datetime.now(timezone.utc),
            duration=self.duration(),
            reached_active=self._reached_active,
            reason=reason,
        )
        self._set_state(CallState.ENDED)
        self._teardown_task = asyncio.ensure_future(self._teardown())
        return self._record

    async def _teardown(self):
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        links = list(self.links.values())
        try:
            await asyncio.gather(*(link.close() for link in links), return_exceptions=True)
        finally:
            self.media.release()
        record = self._record
        log.info("Call %s ended (%s) after %s%s", self.session_id, record.reason,
                 format_duration(record.duration), "" if record.reached_active else "  [failed]")
        self.emit("ended", self, record)

    # -- helpers -------------------------------------------------------------

    def _set_state(self, state: CallState):
        if state is self.state:
            return
        log.info("Call %s: %s -> %s", self.session_id, self.state.value, state.value)
        self.state = state
        self.emit("statechange", self, state)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Call %s task failed", self.session_id, exc_info=task.exception())
