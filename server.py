#!/usr/bin/env python3
"""
Call Signaling Relay
====================
WebSocket relay for call signaling.  Every client registers under its
participant id; offers, answers and ICE candidates addressed to another
participant are forwarded to that participant's socket with the sender id
filled in by the relay.  Media never passes through here: peers connect to
each other directly over WebRTC.

Run:
    python server.py [--host 0.0.0.0] [--port 9753]
"""

import argparse
import asyncio
import errno
import json
import logging
import socket
import time

import websockets
import websockets.exceptions

from callcore.logs import configure_logging
from callcore.signaling import MESSAGE_TYPES

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
HOST = "0.0.0.0"
PORT = 9753

# Keepalive stays loose: a client may be busy for seconds gathering ICE.
WS_PING_INTERVAL = 30      # seconds
WS_PING_TIMEOUT  = 30      # seconds
MAX_FRAME        = 2 ** 20 # an SDP with many candidates stays well below this

WSAEADDRINUSE = 10048      # Windows spelling of EADDRINUSE

log = logging.getLogger("relay")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def get_local_ip() -> str:
    """Best guess at the LAN address peers should dial; no packet is sent."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("10.255.255.255", 1))
            return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def describe_close(exc: websockets.exceptions.ConnectionClosed) -> str:
    frame = exc.rcvd
    if frame is None:
        return "connection lost without close frame"
    return f"closed (code={frame.code} reason={frame.reason!r})"


# ---------------------------------------------------------------------------
# Client record
# ---------------------------------------------------------------------------
class Client:
    __slots__ = ("ws", "participant_id", "connected_at", "last_seen",
                 "forwarded", "dropped")

    def __init__(self, ws):
        self.ws = ws
        self.participant_id: str | None = None
        self.connected_at: float = time.time()
        self.last_seen: float = self.connected_at
        self.forwarded: int = 0
        self.dropped: int = 0


# ---------------------------------------------------------------------------
# SignalingRelay
# ---------------------------------------------------------------------------
class SignalingRelay:
    def __init__(self):
        self.clients: dict = {}          # socket -> Client, registered or not
        self.by_id: dict[str, Client] = {}

    async def _broadcast(self, payload: dict, exclude: Client | None = None):
        text = json.dumps(payload)
        await asyncio.gather(
            *(self._safe_send(c.ws, text) for c in self.by_id.values() if c is not exclude),
            return_exceptions=True,
        )

    @staticmethod
    async def _safe_send(ws, text: str) -> bool:
        try:
            await ws.send(text)
            return True
        except websockets.exceptions.ConnectionClosed as e:
            log.debug("send to %s skipped: %s", ws.remote_address, describe_close(e))
        except Exception as e:
            log.warning("send to %s failed: %s %s", ws.remote_address, type(e).__name__, e)
        return False

    # -- connection handler -------------------------------------------------

    async def handle(self, ws):
        client = Client(ws)
        self.clients[ws] = client
        log.info("+ CONNECT  %s  (%d sockets open)", ws.remote_address, len(self.clients))

        reason = "closed by client"
        try:
            async for frame in ws:
                client.last_seen = time.time()
                if not isinstance(frame, str):
                    continue
                try:
                    await self.on_message(client, json.loads(frame))
                except Exception:
                    log.exception("Bad frame from %s: %.200s", client.participant_id, frame)
        except websockets.exceptions.ConnectionClosed as e:
            reason = describe_close(e)
        except asyncio.CancelledError:
            reason = "relay shutting down"
        finally:
            await self.drop(client, reason)

    async def drop(self, client: Client, reason: str):
        self.clients.pop(client.ws, None)
        pid = client.participant_id
        if pid is not None and self.by_id.get(pid) is client:
            del self.by_id[pid]
            await self._broadcast({"type": "peer_left", "id": pid})
        log.info("- DISCONNECT  %s  (%s)  %s  up=%.1fs  "
                 "forwarded=%d  undeliverable=%d  sockets=%d",
                 pid, client.ws.remote_address, reason,
                 time.time() - client.connected_at, client.forwarded,
                 client.dropped, len(self.clients))

    # -- messages -----------------------------------------------------------

    async def on_message(self, client: Client, data: dict):
        t = data.get("type")

        if t == "hello":
            await self._register(client, str(data.get("id") or ""))

        elif t in MESSAGE_TYPES:
            await self._forward(client, data)

        else:
            log.warning("  unknown message type %r from %s", t, client.participant_id)

    async def _register(self, client: Client, pid: str):
        if not pid:
            log.warning("  hello without id from %s", client.ws.remote_address)
            return

        previous = self.by_id.get(pid)
        if previous is not None and previous is not client:
            # Same participant reconnecting; the old socket is stale.
            log.info("  %s re-registered, closing stale socket", pid)
            previous.participant_id = None
            try:
                await previous.ws.close()
            except Exception as e:
                log.debug("  error closing stale socket for %s: %s", pid, e)

        client.participant_id = pid
        self.by_id[pid] = client
        log.info("  hello  %s  (%s)", pid, client.ws.remote_address)
        await self._safe_send(client.ws, json.dumps({
            "type": "welcome",
            "peers": [p for p in self.by_id if p != pid],
        }))
        await self._broadcast({"type": "peer_joined", "id": pid}, exclude=client)

    async def _forward(self, client: Client, data: dict):
        if client.participant_id is None:
            log.warning("  %s before hello from %s", data.get("type"), client.ws.remote_address)
            return

        target_id = data.get("to")
        data["from"] = client.participant_id
        target = self.by_id.get(target_id)
        if target is not None and await self._safe_send(target.ws, json.dumps(data)):
            client.forwarded += 1
            log.debug("  %s  %s -> %s  (session %s)", data["type"],
                      client.participant_id, target_id, data.get("session_id"))
            return

        client.dropped += 1
        log.info("  undeliverable %s  %s -> %s", data.get("type"),
                 client.participant_id, target_id)
        await self._safe_send(client.ws, json.dumps({
            "type": "undeliverable",
            "what": data.get("type"),
            "to": target_id,
            "session_id": data.get("session_id"),
        }))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
async def main(host: str, port: int):
    relay = SignalingRelay()

    log.info("Call signaling relay on %s:%d (LAN %s:%d), keepalive %ds/%ds",
             host, port, get_local_ip(), port, WS_PING_INTERVAL, WS_PING_TIMEOUT)

    async with websockets.serve(
        relay.handle,
        host,
        port,
        max_size=MAX_FRAME,
        ping_interval=WS_PING_INTERVAL,
        ping_timeout=WS_PING_TIMEOUT,
    ):
        await asyncio.get_running_loop().create_future()


def cli():
    parser = argparse.ArgumentParser(description="Call signaling relay")
    parser.add_argument("--host", default=HOST, help="Interface to listen on")
    parser.add_argument("--port", type=int, default=PORT, help="TCP port")
    parser.add_argument("--debug", action="store_true", help="Log every forwarded message")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.debug else logging.INFO)
    try:
        asyncio.run(main(args.host, args.port))
    except KeyboardInterrupt:
        log.info("Relay stopped.")
    except OSError as e:
        if e.errno not in (errno.EADDRINUSE, WSAEADDRINUSE):
            raise
        log.error("Port %d is taken; stop the other relay or pass --port.", args.port)


if __name__ == "__main__":
    cli()
