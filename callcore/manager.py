"""
Call Session Manager: the public entry point used by the UI.

Only this module constructs ``CallSession`` objects, and it keeps at most
one of them alive at a time.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from pyee.asyncio import AsyncIOEventEmitter

from .config import CallConfig
from .errors import AlreadyInSession, CallError
from .media import CaptureDevices, MediaSource
from .models import CallKind, CallRecord, CallState, Participant
from .session import CallSession
from .signaling import Offer, SignalingChannel, SignalingMessage

log = logging.getLogger("callcore.manager")


def kind_from_sdp(sdp: str) -> CallKind:
    return CallKind.VIDEO if "m=video" in sdp else CallKind.AUDIO


@dataclass
class IncomingCall:
    """A call somebody offered us that has not been accepted or declined yet."""

    session_id: str
    kind: CallKind
    callers: list[str] = field(default_factory=list)
    participants: list[str] = field(default_factory=list)   # as announced by the offers
    messages: list[tuple[str, SignalingMessage]] = field(default_factory=list)
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CallSessionManager(AsyncIOEventEmitter):
    """Creates and ends call sessions for one local participant.

    Events:

    * ``callstarted(session)`` as soon as a session exists (before media)
    * ``callended(session, CallRecord)``
    * ``incoming(IncomingCall)`` when an offer arrives for an unknown call
    * ``incomingcancelled(IncomingCall)`` when every caller went away or the
      call was not answered within ``config.connect_timeout``
    """

    def __init__(self, local_id: str, signaling: SignalingChannel,
                 config: CallConfig | None = None,
                 devices: CaptureDevices | None = None,
                 roster_lookup=None, pc_factory=None, clock=time.monotonic):
        super().__init__()
        self.local_id = local_id
        self.signaling = signaling
        self.config = config or CallConfig()
        self.incoming: dict[str, IncomingCall] = {}
        self.devices = devices or CaptureDevices(self.config.sample_rate, self.config.block_size)
        self._roster_lookup = roster_lookup
        self._pc_factory = pc_factory
        self._clock = clock
        self._session: CallSession | None = None
        self._tasks: set[asyncio.Task] = set()
        self._expiry: dict[str, asyncio.TimerHandle] = {}

        signaling.on("message", self._on_signal)
        signaling.on("peer_left", self._on_peer_left)

    def current_session(self) -> CallSession | None:
        return self._session

    # -- calls ---------------------------------------------------------------

    async def start_call(self, session_id: str, roster, kind: CallKind) -> CallSession:
        """Start an outgoing call; raises ``AlreadyInSession`` if one is running."""
        session = self._create(session_id, list(roster), CallKind(kind), "outgoing")
        return await self._run(session)

    async def accept_call(self, session_id: str, roster=None) -> CallSession:
        """Join an incoming call, answering every offer received so far.

        The roster comes from the argument or the roster lookup, topped up
        with everyone the offers announced and everyone who offered.
        """
        call = self.incoming.get(session_id)
        if call is None:
            raise CallError(f"no incoming call {session_id}")
        self._check_idle(session_id)
        self._forget_incoming(session_id)

        if roster is None and self._roster_lookup is not None:
            roster = await self._roster_lookup(session_id)
        roster = list(roster or [])
        known = {p.id for p in roster} | {self.local_id}
        for pid in call.participants + call.callers:
            if pid not in known:
                roster.append(Participant(pid))
                known.add(pid)

        session = self._create(session_id, roster, call.kind, "incoming")
        session.preload(call.messages)

        # Between participants who did not start the call, the smaller id offers.
        offer_to = [pid for pid in session.remote_ids
                    if pid not in call.callers and self.local_id < pid]
        return await self._run(session, offer_to)

    def decline_call(self, session_id: str) -> CallRecord | None:
        call = self._forget_incoming(session_id)
        if call is None:
            return None
        log.info("Declined %s call %s from %s", call.kind.value, session_id,
                 ", ".join(call.callers))
        return CallRecord(
            session_id=session_id,
            kind=call.kind,
            direction="missed",
            participants=[Participant(pid) for pid in call.callers],
            started_at=call.received_at,
            ended_at=datetime.now(timezone.utc),
            reason="declined",
        )

    async def end_active_call(self, reason: str = "hangup") -> CallRecord | None:
        session = self._session
        if session is None:
            return None
        return await session.end(reason)

    async def close(self) -> None:
        await self.end_active_call("shutdown")
        for session_id in list(self.incoming):
            self._forget_incoming(session_id)
        for task in list(self._tasks):
            task.cancel()

    # -- session lifecycle ---------------------------------------------------

    def _check_idle(self, session_id: str):
        current = self._session
        if current is not None and current.state is not CallState.ENDED:
            raise AlreadyInSession(
                f"cannot start {session_id}: call {current.session_id} is {current.state.value}")

    def _create(self, session_id: str, roster, kind: CallKind, direction: str) -> CallSession:
        self._check_idle(session_id)
        session = CallSession(
            session_id, self.local_id, roster, kind, self.signaling,
            media=MediaSource(self.devices),
            config=self.config,
            pc_factory=self._pc_factory,
            direction=direction,
            clock=self._clock,
        )
        session.on("ended", self._on_session_ended)
        self._session = session
        self.emit("callstarted", session)
        return session

    async def _run(self, session: CallSession, offer_to=None) -> CallSession:
        try:
            return await session.start(offer_to)
        except BaseException:
            if self._session is session:
                self._session = None
            raise

    def _on_session_ended(self, session: CallSession, record: CallRecord):
        if self._session is session:
            self._session = None
        self.emit("callended", session, record)

    # -- signaling -----------------------------------------------------------

    def _on_signal(self, session_id: str, from_id: str, message: SignalingMessage):
        session = self._session
        if (session is not None and session.session_id == session_id
                and session.state is not CallState.ENDED):
            session.dispatch(from_id, message)
            return

        call = self.incoming.get(session_id)
        if call is not None:
            call.messages.append((from_id, message))
            if isinstance(message, Offer):
                self._note_offer(call, from_id, message)
            return

        if isinstance(message, Offer):
            call = IncomingCall(session_id, kind_from_sdp(message.sdp),
                                messages=[(from_id, message)])
            self._note_offer(call, from_id, message)
            self.incoming[session_id] = call
            # Nobody hangs up on a ringing call; the caller gives up after this long.
            self._expiry[session_id] = asyncio.get_running_loop().call_later(
                self.config.connect_timeout, self._expire_incoming, session_id)
            log.info("Incoming %s call %s from %s", call.kind.value, session_id, from_id)
            self.emit("incoming", call)
            return

        log.debug("Dropping %s from %s for unknown call %s",
                  type(message).__name__, from_id, session_id)

    @staticmethod
    def _note_offer(call: IncomingCall, from_id: str, offer: Offer):
        if from_id not in call.callers:
            call.callers.append(from_id)
        for pid in offer.participants:
            if pid not in call.participants:
                call.participants.append(pid)

    def _forget_incoming(self, session_id: str) -> IncomingCall | None:
        timer = self._expiry.pop(session_id, None)
        if timer is not None:
            timer.cancel()
        return self.incoming.pop(session_id, None)

    def _expire_incoming(self, session_id: str):
        self._expiry.pop(session_id, None)
        call = self.incoming.pop(session_id, None)
        if call is not None:
            log.info("Incoming call %s from %s not answered in %.0fs", session_id,
                     ", ".join(call.callers), self.config.connect_timeout)
            self.emit("incomingcancelled", call)

    def _on_peer_left(self, participant_id: str):
        session = self._session
        if session is not None and participant_id in session.participants:
            task = asyncio.ensure_future(session.remove_participant(participant_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        for session_id, call in list(self.incoming.items()):
            if participant_id in call.callers:
                call.callers.remove(participant_id)
                if not call.callers:
                    self._forget_incoming(session_id)
                    log.info("Incoming call %s cancelled: %s left", session_id, participant_id)
                    self.emit("incomingcancelled", call)
