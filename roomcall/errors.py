"""
Error taxonomy for the signaling client
"""


class SignalingError(Exception):
    """Base class for errors raised while running a call"""


class MediaDenied(SignalingError):
    """Local capture was refused or no capture device is available"""


class NoLocalMedia(SignalingError):
    """A negotiation step needs local media that has not been acquired"""


class AlreadyNegotiating(SignalingError):
    """Negotiation start requested while a negotiation is already running"""


class NoPeerHandle(SignalingError):
    """A negotiation message arrived with no active session to apply it to"""


class MalformedMessage(SignalingError):
    """A signaling message or candidate is missing required fields"""


class NegotiationFailed(SignalingError):
    """The peer connection failed to negotiate or lost connectivity"""


class ChannelClosed(SignalingError):
    """The signaling transport dropped"""


class PeerHandleUnavailable(SignalingError):
    """
    The peer connection could not be allocated.

    This is the only error that escapes the session event loop.
    """
