"""Tests for PeerLink negotiation, candidate queuing and state tracking."""

import asyncio

import pytest

from callcore import Answer, CallConfig, IceCandidate, NegotiationError, Offer, PeerLink, PeerState
from callcore.media import LevelMeterTrack
from callcore.peer import parse_candidate
from fakes import AUDIO_OFFER, FakeTrack, candidate


def open_link(signaling, pcs, tracks=None, config=None) -> PeerLink:
    link = PeerLink("s1", "bob", signaling, config=config, pc_factory=pcs)
    return link.open(tracks if tracks is not None else [FakeTrack("audio")])


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------
def test_early_candidates_are_replayed_in_arrival_order(signaling, pcs):
    async def scenario():
        link = open_link(signaling, pcs)
        for port in (50001, 50002, 50003):
            await link.handle_remote_candidate(candidate(port))

        assert len(link.pending_candidates) == 3
        assert link.pc.candidates == []

        await link.handle_remote_offer(AUDIO_OFFER)

        assert [c.port for c in link.pc.candidates] == [50001, 50002, 50003]
        assert [c.sdpMid for c in link.pc.candidates] == ["0", "0", "0"]
        assert link.pending_candidates == []
        assert len(signaling.sent_to("bob", Answer)) == 1
        await link.close()

    asyncio.run(scenario())


def test_offerer_queues_candidates_until_answer(signaling, pcs):
    async def scenario():
        link = open_link(signaling, pcs)
        await link.create_offer()
        assert not link.ready

        await link.handle_remote_candidate(candidate(50001))
        await link.handle_remote_candidate(candidate(50002))
        assert link.pc.candidates == []

        await link.handle_remote_answer(AUDIO_OFFER)
        assert link.ready
        assert [c.port for c in link.pc.candidates] == [50001, 50002]

        # Once both descriptions are set, candidates go straight through
        await link.handle_remote_candidate(candidate(50003))
        assert [c.port for c in link.pc.candidates] == [50001, 50002, 50003]
        await link.close()

    asyncio.run(scenario())


def test_malformed_candidate_does_not_fail_the_link(signaling, pcs):
    async def scenario():
        link = open_link(signaling, pcs)
        await link.handle_remote_offer(AUDIO_OFFER)
        await link.handle_remote_candidate(IceCandidate("candidate:garbage", "0", 0))
        assert link.pc.candidates == []
        assert link.state is PeerState.NEW
        await link.close()

    asyncio.run(scenario())


def test_parse_candidate():
    parsed = parse_candidate(candidate(50001, mid="audio"))
    assert parsed.ip == "192.168.1.2"
    assert parsed.port == 50001
    assert parsed.type == "host"
    assert parsed.sdpMid == "audio"
    assert parsed.sdpMLineIndex == 0

    with pytest.raises(NegotiationError):
        parse_candidate(IceCandidate("candidate:1 1 udp"))
    with pytest.raises(NegotiationError):
        parse_candidate(IceCandidate("candidate:1 1 udp 1 10.0.0.1 notaport typ host"))


# ---------------------------------------------------------------------------
# Negotiation
# ---------------------------------------------------------------------------
def test_create_offer_sends_offer(signaling, pcs):
    async def scenario():
        link = open_link(signaling, pcs)
        link.roster = ("me", "bob", "carol")
        sdp = await link.create_offer()
        assert signaling.sent == [("s1", "bob", Offer(sdp, participants=("me", "bob", "carol")))]
        assert "m=audio" in sdp
        await link.close()

    asyncio.run(scenario())


def test_listeners_attach_before_and_after_open(signaling, pcs):
    async def scenario():
        link = PeerLink("s1", "bob", signaling, pc_factory=pcs)
        seen = []
        link.on("statechange", lambda l, state: seen.append(state))
        link.open([FakeTrack("audio")])
        link.on("statechange", lambda l, state: seen.append(state.value))

        link.pc.set_state("checking")
        # negotiation runs through the signaling lock alongside the listeners
        await link.handle_remote_offer(AUDIO_OFFER)

        assert seen == [PeerState.CHECKING, "checking"]
        assert len(signaling.sent_to("bob", Answer)) == 1
        await link.close()

    asyncio.run(scenario())


def test_rejected_offer_fails_the_link(signaling, pcs):
    async def scenario():
        link = open_link(signaling, pcs)
        link.pc.fail_remote = True
        with pytest.raises(NegotiationError):
            await link.handle_remote_offer("not sdp")
        assert link.state is PeerState.FAILED
        assert signaling.sent == []

        # A failed link is never reused
        with pytest.raises(NegotiationError):
            await link.handle_remote_answer(AUDIO_OFFER)
        await link.close()

    asyncio.run(scenario())


def test_signaling_failure_is_contained(signaling, pcs):
    async def scenario():
        signaling.fail = True
        link = open_link(signaling, pcs)
        await link.create_offer()
        assert link.state is PeerState.NEW
        await link.close()

    asyncio.run(scenario())


def test_negotiation_timeout_fails_the_link(signaling, pcs):
    async def scenario():
        link = open_link(signaling, pcs, config=CallConfig(negotiation_timeout=0.01))
        await asyncio.sleep(0.05)
        assert link.state is PeerState.FAILED
        await link.close()

    asyncio.run(scenario())


def test_negotiation_timeout_is_cancelled_once_connected(signaling, pcs):
    async def scenario():
        link = open_link(signaling, pcs, config=CallConfig(negotiation_timeout=0.01))
        link.pc.set_state("connected")
        await asyncio.sleep(0.05)
        assert link.state is PeerState.CONNECTED
        await link.close()

    asyncio.run(scenario())


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------
def test_state_follows_connection_and_never_regresses(signaling, pcs):
    async def scenario():
        link = open_link(signaling, pcs)
        seen = []
        link.on("statechange", lambda l, state: seen.append(state))
        pc = link.pc

        pc.set_state("connecting")
        pc.set_state("connected")
        pc.set_state("new")
        assert link.state is PeerState.CONNECTED

        pc.set_state("disconnected")
        pc.set_state("connected")
        pc.set_state("failed")
        pc.set_state("connected")
        assert link.state is PeerState.FAILED
        assert link.terminal

        assert seen == [PeerState.CHECKING, PeerState.CONNECTED, PeerState.DISCONNECTED,
                        PeerState.CONNECTED, PeerState.FAILED]
        await link.close()
        assert seen[-1] is PeerState.CLOSED

    asyncio.run(scenario())


def test_close_is_idempotent(signaling, pcs):
    async def scenario():
        local = FakeTrack("audio")
        link = open_link(signaling, pcs, tracks=[local])
        await link.handle_remote_candidate(candidate(50001))
        closed = []
        link.on("statechange", lambda l, state: closed.append(state))

        await link.close()
        await link.close()

        assert link.state is PeerState.CLOSED
        assert closed == [PeerState.CLOSED]
        assert link.pc.closed
        assert local.readyState == "ended"
        assert link.pending_candidates == []

        # Late signaling for a closed link is ignored or rejected, never applied
        await link.handle_remote_candidate(candidate(50002))
        with pytest.raises(NegotiationError):
            await link.handle_remote_offer(AUDIO_OFFER)
        assert link.pc.candidates == []

    asyncio.run(scenario())


def test_open_twice_is_an_error(signaling, pcs):
    async def scenario():
        link = open_link(signaling, pcs)
        with pytest.raises(RuntimeError):
            link.open([])
        await link.close()

    asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Tracks
# ---------------------------------------------------------------------------
def test_replace_video_keeps_the_sender_track(signaling, pcs):
    async def scenario():
        camera = FakeTrack("video")
        link = open_link(signaling, pcs, tracks=[FakeTrack("audio"), camera])
        video = link.video_track
        assert link.pc.sender("video").track is video
        assert video.source is camera
        screen = FakeTrack("video")

        renegotiated = await link.replace_outgoing_video_track(screen)

        assert renegotiated is False
        assert link.pc.sender("video").track is video
        assert link.pc.sender("video").replaced == []
        assert video.source is screen
        assert link.pc.offers == 0
        assert camera.readyState == "ended"

        await link.close()
        assert video.readyState == "ended"
        assert screen.readyState == "ended"

    asyncio.run(scenario())


def test_replace_video_without_sender_renegotiates(signaling, pcs):
    async def scenario():
        link = open_link(signaling, pcs)
        await link.create_offer()
        assert link.video_track is None
        screen = FakeTrack("video")

        renegotiated = await link.replace_outgoing_video_track(screen)

        assert renegotiated is True
        assert link.pc.sender("video").track is link.video_track
        assert link.video_track.source is screen
        assert link.pc.offers == 2
        assert len(signaling.sent_to("bob", Offer)) == 2
        await link.close()

    asyncio.run(scenario())


def test_remote_audio_is_metered_and_reported(signaling, pcs):
    async def scenario():
        link = open_link(signaling, pcs)
        events = []
        link.on("track", lambda l, t: events.append(("track", t.kind)))
        link.on("trackended", lambda l, t: events.append(("ended", t.kind)))
        link.on("speaking", lambda l, speaking: events.append(("speaking", speaking)))

        remote = FakeTrack("audio", level=3000)
        link.pc.emit("track", remote)
        wrapped = link.remote_tracks[0]
        assert isinstance(wrapped, LevelMeterTrack)

        await wrapped.recv()
        remote.stop()

        assert events == [("track", "audio"), ("speaking", True), ("ended", "audio")]
        assert link.remote_tracks == []
        await link.close()

    asyncio.run(scenario())
