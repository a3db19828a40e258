"""
Tunables for call sessions.

Module-level constants are the defaults; ``CallConfig.from_env()`` lets a
deployment override them through ``CALLCORE_*`` environment variables.
"""

import os
from dataclasses import dataclass, field

from aiortc import RTCConfiguration, RTCIceServer

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]

NEGOTIATION_TIMEOUT   = 30.0   # seconds for one peer link to reach "connected"
CONNECT_TIMEOUT       = 30.0   # seconds for the session to reach "active"
ICE_GATHERING_TIMEOUT = 30.0   # seconds to wait for local candidates
DISCONNECT_GRACE      = 5.0    # seconds an active call waits for a dropped link to recover

SAMPLE_RATE = 48000
BLOCK_SIZE  = 960              # 20 ms at 48 kHz

# int16 RMS thresholds for the speaking indicator (start > stop = hysteresis)
SPEAK_RMS_START = 900
SPEAK_RMS_STOP  = 600


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass
class CallConfig:
    ice_servers: list[str] = field(default_factory=lambda: list(ICE_SERVERS))
    negotiation_timeout: float = NEGOTIATION_TIMEOUT
    connect_timeout: float = CONNECT_TIMEOUT
    ice_gathering_timeout: float = ICE_GATHERING_TIMEOUT
    disconnect_grace: float = DISCONNECT_GRACE
    sample_rate: int = SAMPLE_RATE
    block_size: int = BLOCK_SIZE
    speak_rms_start: int = SPEAK_RMS_START
    speak_rms_stop: int = SPEAK_RMS_STOP

    @classmethod
    def from_env(cls) -> "CallConfig":
        """Build a config from ``CALLCORE_*`` variables, falling back to defaults.

        ``CALLCORE_ICE_SERVERS`` is a comma-separated list of ICE URLs.
        """
        servers = os.environ.get("CALLCORE_ICE_SERVERS")
        return cls(
            ice_servers=([s.strip() for s in servers.split(",") if s.strip()]
                         if servers else list(ICE_SERVERS)),
            negotiation_timeout=_env_float("CALLCORE_NEGOTIATION_TIMEOUT",
                                           NEGOTIATION_TIMEOUT),
            connect_timeout=_env_float("CALLCORE_CONNECT_TIMEOUT", CONNECT_TIMEOUT),
            ice_gathering_timeout=_env_float("CALLCORE_ICE_GATHERING_TIMEOUT",
                                             ICE_GATHERING_TIMEOUT),
            disconnect_grace=_env_float("CALLCORE_DISCONNECT_GRACE", DISCONNECT_GRACE),
            speak_rms_start=_env_int("CALLCORE_SPEAK_RMS_START", SPEAK_RMS_START),
            speak_rms_stop=_env_int("CALLCORE_SPEAK_RMS_STOP", SPEAK_RMS_STOP),
        )

    def rtc_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in self.ice_servers])
