"""
Plain data types shared across the call core.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime


class CallKind(str, enum.Enum):
    AUDIO = "audio"
    VIDEO = "video"


class CallState(str, enum.Enum):
    IDLE       = "idle"
    CONNECTING = "connecting"
    ACTIVE     = "active"
    ENDED      = "ended"


class PeerState(str, enum.Enum):
    NEW          = "new"
    CHECKING     = "checking"
    CONNECTED    = "connected"
    DISCONNECTED = "disconnected"
    FAILED       = "failed"
    CLOSED       = "closed"

    @property
    def terminal(self) -> bool:
        return self in (PeerState.FAILED, PeerState.CLOSED)


# Legal peer link transitions.  "disconnected" may recover to "connected";
# nothing ever goes back to "new", and terminal states only lead to "closed".
PEER_TRANSITIONS: dict[PeerState, frozenset[PeerState]] = {
    PeerState.NEW: frozenset({PeerState.CHECKING, PeerState.CONNECTED,
                              PeerState.FAILED, PeerState.CLOSED}),
    PeerState.CHECKING: frozenset({PeerState.CONNECTED, PeerState.DISCONNECTED,
                                   PeerState.FAILED, PeerState.CLOSED}),
    PeerState.CONNECTED: frozenset({PeerState.DISCONNECTED, PeerState.FAILED,
                                    PeerState.CLOSED}),
    PeerState.DISCONNECTED: frozenset({PeerState.CONNECTED, PeerState.FAILED,
                                       PeerState.CLOSED}),
    PeerState.FAILED: frozenset({PeerState.CLOSED}),
    PeerState.CLOSED: frozenset(),
}

# aiortc's RTCPeerConnection.connectionState -> PeerState
RTC_STATE_MAP = {
    "new":          PeerState.NEW,
    "connecting":   PeerState.CHECKING,
    "checking":     PeerState.CHECKING,
    "connected":    PeerState.CONNECTED,
    "disconnected": PeerState.DISCONNECTED,
    "failed":       PeerState.FAILED,
    "closed":       PeerState.CLOSED,
}


@dataclass
class Participant:
    """One call participant as the UI sees it."""

    id: str
    display_name: str = ""
    avatar: str | None = None
    audio_enabled: bool = True
    video_enabled: bool = False
    speaking: bool = False
    link_state: PeerState = PeerState.NEW

    def __post_init__(self):
        if not self.display_name:
            self.display_name = self.id

    @property
    def degraded(self) -> bool:
        return self.link_state in (PeerState.DISCONNECTED, PeerState.FAILED)


@dataclass
class CallRecord:
    """Summary of a finished call, handed to whoever keeps the call history."""

    session_id: str
    kind: CallKind
    direction: str                     # "outgoing" | "incoming" | "missed"
    participants: list[Participant] = field(default_factory=list)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration: float = 0.0
    reached_active: bool = False
    reason: str = ""

    @property
    def failed(self) -> bool:
        """True when the call ended without anybody ever connecting."""
        return self.direction != "missed" and not self.reached_active

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "type": self.kind.value,
            "direction": self.direction,
            "participants": [
                {"id": p.id, "name": p.display_name, "avatar": p.avatar}
                for p in self.participants
            ],
            "duration": int(self.duration),
            "start_time": self.started_at.isoformat() if self.started_at else None,
            "end_time": self.ended_at.isoformat() if self.ended_at else None,
        }


def format_duration(seconds: float) -> str:
    """``MM:SS`` below one hour, ``H:MM:SS`` from there on."""
    total = max(0, int(seconds))
    hrs, rest = divmod(total, 3600)
    mins, secs = divmod(rest, 60)
    if hrs:
        return f"{hrs}:{mins:02d}:{secs:02d}"
    return f"{mins:02d}:{secs:02d}"
