"""Tests for the signaling wire format and the WebSocket channel's frame handling."""

import asyncio
import json

import pytest

from callcore import Answer, Envelope, IceCandidate, Offer, TransportError, WebSocketSignaling
from callcore.signaling import decode_envelope, encode_envelope


def test_encode_offer():
    data = json.loads(encode_envelope(Envelope("s1", "alice", "bob", Offer("v=0\r\n"))))
    assert data == {"type": "offer", "session_id": "s1", "from": "alice", "to": "bob",
                    "sdp": "v=0\r\n"}


def test_offer_carries_the_call_roster():
    offer = Offer("v=0\r\n", participants=("alice", "bob", "carol"))
    text = encode_envelope(Envelope("s1", "alice", "bob", offer))
    assert json.loads(text)["participants"] == ["alice", "bob", "carol"]
    assert decode_envelope(text).message == offer


def test_encode_candidate():
    cand = IceCandidate("candidate:1 1 udp 1 10.0.0.1 5000 typ host", "0", 0)
    data = json.loads(encode_envelope(Envelope("s1", "alice", "bob", cand)))
    assert data["type"] == "candidate"
    assert data["candidate"] == cand.candidate
    assert data["sdp_mid"] == "0"
    assert data["sdp_mline_index"] == 0
    assert "sdp" not in data


def test_decode_candidate_from_dict():
    envelope = decode_envelope({
        "type": "candidate", "session_id": "s1", "from": "bob", "to": "alice",
        "candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host",
        "sdp_mid": "audio", "sdp_mline_index": "1",
    })
    assert envelope.session_id == "s1"
    assert envelope.from_id == "bob"
    assert envelope.to_id == "alice"
    assert envelope.message == IceCandidate("candidate:1 1 udp 1 10.0.0.1 5000 typ host",
                                            "audio", 1)


def test_decode_answer_from_text():
    text = json.dumps({"type": "answer", "session_id": "s1", "from": "bob", "sdp": "v=0"})
    envelope = decode_envelope(text)
    assert envelope.message == Answer("v=0")
    assert envelope.to_id == ""


@pytest.mark.parametrize("frame", [
    [],
    {"type": "offer", "from": "bob", "sdp": "v=0"},
    {"type": "offer", "session_id": "s1", "sdp": "v=0"},
    {"type": "offer", "session_id": "s1", "from": "bob"},
    {"type": "offer", "session_id": "s1", "from": "bob", "sdp": "v=0", "participants": "carol"},
    {"type": "candidate", "session_id": "s1", "from": "bob"},
    {"type": "bye", "session_id": "s1", "from": "bob"},
])
def test_decode_rejects_malformed_frames(frame):
    with pytest.raises(ValueError):
        decode_envelope(frame)


# ---------------------------------------------------------------------------
# WebSocketSignaling
# ---------------------------------------------------------------------------
def test_url_normalisation():
    assert WebSocketSignaling("10.0.0.5:9753", "alice").url == "ws://10.0.0.5:9753"
    assert WebSocketSignaling("wss://relay.example/ws", "alice").url == "wss://relay.example/ws"


def test_inbound_frames_become_events():
    async def scenario():
        channel = WebSocketSignaling("localhost:9753", "alice")
        events = []
        channel.on("message", lambda sid, frm, msg: events.append(("message", sid, frm, msg)))
        channel.on("connected", lambda peers: events.append(("connected", peers)))
        channel.on("peer_joined", lambda pid: events.append(("joined", pid)))
        channel.on("peer_left", lambda pid: events.append(("left", pid)))
        channel.on("undeliverable", lambda sid, to: events.append(("undeliverable", sid, to)))

        channel._on_text(json.dumps({"type": "welcome", "peers": ["bob"]}))
        channel._on_text(json.dumps({"type": "peer_joined", "id": "carol"}))
        channel._on_text(json.dumps({"type": "peer_joined", "id": "carol"}))
        channel._on_text(json.dumps({"type": "offer", "session_id": "s1", "from": "bob",
                                     "to": "alice", "sdp": "v=0"}))
        channel._on_text(json.dumps({"type": "peer_left", "id": "bob"}))
        channel._on_text(json.dumps({"type": "undeliverable", "what": "offer",
                                     "to": "dave", "session_id": "s2"}))
        channel._on_text(json.dumps({"type": "something_new"}))

        assert events == [
            ("connected", ["bob"]),
            ("joined", "carol"),
            ("message", "s1", "bob", Offer("v=0")),
            ("left", "bob"),
            ("undeliverable", "s2", "dave"),
        ]
        assert channel.peers == ["carol"]
        assert channel._ready.is_set()

    asyncio.run(scenario())


def test_send_while_disconnected_raises(monkeypatch):
    async def scenario():
        monkeypatch.setattr(WebSocketSignaling, "SEND_RETRY_DELAY", 0)
        channel = WebSocketSignaling("localhost:9753", "alice")
        with pytest.raises(TransportError):
            await channel.send("s1", "bob", Offer("v=0"))

    asyncio.run(scenario())


def test_send_writes_encoded_frame():
    class RecordingSocket:
        def __init__(self):
            self.sent = []

        async def send(self, text):
            self.sent.append(json.loads(text))

    async def scenario():
        channel = WebSocketSignaling("localhost:9753", "alice")
        channel._ws = RecordingSocket()
        await channel.send("s1", "bob", Answer("v=0"))
        assert channel._ws.sent == [{"type": "answer", "session_id": "s1", "from": "alice",
                                     "to": "bob", "sdp": "v=0"}]

    asyncio.run(scenario())
