"""
callcore: call session lifecycle and peer-connection orchestration.

A ``CallSessionManager`` owns at most one ``CallSession``; the session owns a
``MediaSource`` and one ``PeerLink`` (an aiortc ``RTCPeerConnection``) per
remote participant, negotiated over a ``SignalingChannel``.
"""

from .config import CallConfig
from .errors import (
    AlreadyInSession,
    CallError,
    DeviceUnavailable,
    NegotiationError,
    SessionEnded,
    TransportError,
    UserCancelled,
)
from .logs import configure_logging
from .manager import CallSessionManager, IncomingCall
from .media import CaptureDevices, LocalStream, MediaSource
from .models import (
    CallKind,
    CallRecord,
    CallState,
    Participant,
    PeerState,
    format_duration,
)
from .peer import PeerLink
from .session import CallSession
from .signaling import (
    Answer,
    Envelope,
    IceCandidate,
    Offer,
    SignalingChannel,
    WebSocketSignaling,
)

__all__ = [
    "AlreadyInSession",
    "Answer",
    "CallConfig",
    "CallError",
    "CallKind",
    "CallRecord",
    "CallSession",
    "CallSessionManager",
    "CallState",
    "CaptureDevices",
    "DeviceUnavailable",
    "Envelope",
    "IceCandidate",
    "IncomingCall",
    "LocalStream",
    "MediaSource",
    "NegotiationError",
    "Offer",
    "Participant",
    "PeerLink",
    "PeerState",
    "SessionEnded",
    "SignalingChannel",
    "TransportError",
    "UserCancelled",
    "WebSocketSignaling",
    "configure_logging",
    "format_duration",
]
