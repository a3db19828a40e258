"""
Signaling messages and the channel that carries them.

Wire format (one JSON object per WebSocket text frame)::

    {"type": "offer" | "answer", "session_id": ..., "from": ..., "to": ...,
     "sdp": "v=0...", "participants": ["alice", "bob", ...]}
    {"type": "candidate", "session_id": ..., "from": ..., "to": ...,
     "candidate": "candidate:...", "sdp_mid": "0", "sdp_mline_index": 0}

Control frames exchanged with the relay (``server.py``) are ``hello``,
``welcome``, ``peer_joined``, ``peer_left`` and ``undeliverable``.
"""

import asyncio
import json
import logging
from dataclasses import dataclass

import websockets
import websockets.exceptions
from pyee.asyncio import AsyncIOEventEmitter

from .errors import TransportError

log = logging.getLogger("callcore.signal")


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Offer:
    sdp: str
    participants: tuple[str, ...] = ()   # everyone in the call, sender included


@dataclass(frozen=True)
class Answer:
    sdp: str


@dataclass(frozen=True)
class IceCandidate:
    candidate: str                      # "candidate:<foundation> <component> ..."
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None


SignalingMessage = Offer | Answer | IceCandidate

MESSAGE_TAGS = {Offer: "offer", Answer: "answer", IceCandidate: "candidate"}
MESSAGE_TYPES = frozenset(MESSAGE_TAGS.values())


@dataclass(frozen=True)
class Envelope:
    session_id: str
    from_id: str
    to_id: str
    message: SignalingMessage


def encode_envelope(envelope: Envelope) -> str:
    msg = envelope.message
    data = {
        "type": MESSAGE_TAGS[type(msg)],
        "session_id": envelope.session_id,
        "from": envelope.from_id,
        "to": envelope.to_id,
    }
    if isinstance(msg, IceCandidate):
        data["candidate"] = msg.candidate
        data["sdp_mid"] = msg.sdp_mid
        data["sdp_mline_index"] = msg.sdp_mline_index
    else:
        data["sdp"] = msg.sdp
    if isinstance(msg, Offer) and msg.participants:
        data["participants"] = list(msg.participants)
    return json.dumps(data)


def decode_envelope(data: str | dict) -> Envelope:
    """Parse one signaling frame; raises ``ValueError`` when it is malformed."""
    if isinstance(data, str):
        data = json.loads(data)
    if not isinstance(data, dict):
        raise ValueError("signaling frame is not an object")

    t = data.get("type")
    session_id = data.get("session_id")
    from_id = data.get("from")
    if not isinstance(session_id, str) or not session_id:
        raise ValueError("missing session_id")
    if not isinstance(from_id, str) or not from_id:
        raise ValueError("missing sender")

    if t in ("offer", "answer"):
        sdp = data.get("sdp")
        if not isinstance(sdp, str) or not sdp:
            raise ValueError(f"{t} without sdp")
        if t == "answer":
            message = Answer(sdp)
        else:
            roster = data.get("participants") or []
            if not isinstance(roster, list) or not all(isinstance(p, str) for p in roster):
                raise ValueError("offer participants must be a list of ids")
            message = Offer(sdp, participants=tuple(roster))
    elif t == "candidate":
        cand = data.get("candidate")
        if not isinstance(cand, str) or not cand:
            raise ValueError("candidate without candidate line")
        mline = data.get("sdp_mline_index")
        message = IceCandidate(
            candidate=cand,
            sdp_mid=data.get("sdp_mid"),
            sdp_mline_index=int(mline) if mline is not None else None,
        )
    else:
        raise ValueError(f"unknown signaling type {t!r}")

    return Envelope(session_id, from_id, str(data.get("to") or ""), message)


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------
class SignalingChannel(AsyncIOEventEmitter):
    """Bidirectional transport for signaling messages.

    Events:

    * ``message(session_id, from_id, message)`` for every inbound message,
      in arrival order.
    * ``peer_left(participant_id)`` when the transport learns a remote
      participant went away.
    """

    local_id: str = ""

    async def send(self, session_id: str, target_id: str,
                   message: SignalingMessage) -> None:
        raise NotImplementedError

    def deliver(self, envelope: Envelope) -> None:
        self.emit("message", envelope.session_id, envelope.from_id, envelope.message)


class WebSocketSignaling(SignalingChannel):
    """Signaling over a WebSocket connection to the relay in ``server.py``.

    If the connection drops, the channel reconnects with exponential backoff
    and gives up (emitting ``disconnected``) after MAX_RECONNECT_ATTEMPTS
    consecutive failures.  ``send`` retries
    while the connection is down and raises ``TransportError`` once
    SEND_ATTEMPTS are used up.
    """

    MAX_RECONNECT_ATTEMPTS = 5
    RECONNECT_BASE_DELAY   = 2      # seconds, doubles each attempt
    SEND_ATTEMPTS          = 3
    SEND_RETRY_DELAY       = 0.5    # seconds, doubles each attempt

    def __init__(self, address: str, local_id: str):
        super().__init__()
        self.url = address if "://" in address else f"ws://{address}"
        self.local_id = local_id
        self.peers: list[str] = []
        self._ws = None
        self._task: asyncio.Task | None = None
        self._ready = asyncio.Event()
        self._closing = False
        self._heard_from_relay = False

    # -- public API ----------------------------------------------------------

    async def connect(self, timeout: float = 10.0) -> None:
        """Open the connection and wait for the relay's welcome."""
        self._closing = False
        self._task = asyncio.ensure_future(self._main())
        waiter = asyncio.ensure_future(self._ready.wait())
        await asyncio.wait({waiter, self._task}, timeout=timeout,
                           return_when=asyncio.FIRST_COMPLETED)
        if not self._ready.is_set():
            waiter.cancel()
            await self.close()
            raise TransportError(f"could not connect to {self.url}")

    async def send(self, session_id: str, target_id: str,
                   message: SignalingMessage) -> None:
        text = encode_envelope(Envelope(session_id, self.local_id, target_id, message))
        tag = MESSAGE_TAGS[type(message)]
        delay = self.SEND_RETRY_DELAY

        for attempt in range(1, self.SEND_ATTEMPTS + 1):
            ws = self._ws
            if ws is not None:
                try:
                    await ws.send(text)
                    log.debug("WS send: %s -> %s  (session %s)", tag, target_id, session_id)
                    return
                except websockets.exceptions.ConnectionClosed as e:
                    log.warning("send %s -> %s failed (%s, attempt %d/%d)",
                                tag, target_id, e, attempt, self.SEND_ATTEMPTS)
            else:
                log.debug("send %s -> %s while disconnected (attempt %d/%d)",
                          tag, target_id, attempt, self.SEND_ATTEMPTS)
            if attempt < self.SEND_ATTEMPTS:
                await asyncio.sleep(delay)
                delay *= 2

        raise TransportError(
            f"could not deliver {tag} to {target_id} after {self.SEND_ATTEMPTS} attempts")

    async def close(self) -> None:
        self._closing = True
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                log.debug("Error closing relay socket: %s", e)
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._ws = None

    # -- connection loop -----------------------------------------------------

    async def _main(self):
        failures = 0

        while not self._closing:
            self._heard_from_relay = False
            try:
                await self._connect_once()
                reason = "relay closed the connection"
            except asyncio.CancelledError:
                return
            except ConnectionRefusedError:
                if not self._ready.is_set():
                    log.error("Could not connect to %s. Is the relay running?", self.url)
                    return
                reason = "connection refused"
            except websockets.exceptions.ConnectionClosed as e:
                frame = e.rcvd
                reason = (f"closed (code={frame.code} reason={frame.reason!r})"
                          if frame is not None else "connection lost")
                log.warning("Relay connection dropped: %s", reason)
            except OSError as e:
                reason = f"network error: {e}"
                log.warning("Relay unreachable: %s", e)
            finally:
                self._ws = None

            if self._closing:
                return

            # A connection that carried traffic starts the backoff from scratch.
            failures = 1 if self._heard_from_relay else failures + 1
            if failures > self.MAX_RECONNECT_ATTEMPTS:
                log.error("Relay %s lost for good after %d attempts (%s)",
                          self.url, failures - 1, reason)
                self.emit("disconnected", reason)
                return

            delay = min(self.RECONNECT_BASE_DELAY * (2 ** (failures - 1)), 30)
            log.info("Reconnect %d/%d in %.0fs (%s)",
                     failures, self.MAX_RECONNECT_ATTEMPTS, delay, reason)
            self.emit("reconnecting", failures)
            await asyncio.sleep(delay)

    async def _connect_once(self):
        log.info("Connecting to %s ...", self.url)
        async with websockets.connect(
            self.url,
            max_size=2 ** 20,
            ping_interval=30,
            ping_timeout=30,
        ) as ws:
            self._ws = ws
            await ws.send(json.dumps({"type": "hello", "id": self.local_id}))

            async for frame in ws:
                self._heard_from_relay = True
                if not isinstance(frame, str):
                    continue
                try:
                    self._on_text(frame)
                except Exception:
                    log.exception("Bad frame from relay: %.200s", frame)

    def _on_text(self, text: str):
        data = json.loads(text)
        t = data.get("type")
        log.debug("relay -> %s", t)

        if t in MESSAGE_TYPES:
            self.deliver(decode_envelope(data))

        elif t == "welcome":
            self.peers = list(data.get("peers", []))
            log.info("Relay welcome as %s (%d peers online)", self.local_id, len(self.peers))
            self._ready.set()
            self.emit("connected", list(self.peers))

        elif t == "peer_left":
            pid = data.get("id")
            if pid in self.peers:
                self.peers.remove(pid)
            self.emit("peer_left", pid)

        elif t == "peer_joined":
            pid = data.get("id")
            if pid and pid not in self.peers:
                self.peers.append(pid)
                self.emit("peer_joined", pid)

        elif t == "undeliverable":
            log.warning("Relay could not deliver %s to %s (session %s)",
                        data.get("what"), data.get("to"), data.get("session_id"))
            self.emit("undeliverable", data.get("session_id"), data.get("to"))

        else:
            log.debug("Ignoring relay frame of type %r", t)
