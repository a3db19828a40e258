"""
Exceptions raised by the call core.

Session-level errors propagate to whoever called ``start_call`` /
``start_screen_share``.  Per-link errors (``NegotiationError``,
``TransportError``) are caught by the session and turned into link state.
"""


class CallError(Exception):
    """Base class for every error raised by callcore."""


class DeviceUnavailable(CallError):
    """A local capture device (microphone / camera) could not be opened."""


class AlreadyInSession(CallError):
    """A call was started while another one is still connecting or active."""


class NegotiationError(CallError):
    """An offer / answer exchange was malformed or rejected by the peer."""


class UserCancelled(CallError):
    """Screen capture was denied or cancelled."""


class TransportError(CallError):
    """The signaling channel gave up delivering a message."""


class SessionEnded(CallError):
    """The session ended before (or while) the operation ran."""
