"""Exception types shared by the relay server and the call client."""


class CallRelayError(Exception):
    """Base class for every error raised by callrelay."""


class ProtocolError(CallRelayError):
    """Malformed envelope or unknown message kind."""


class CallStateError(CallRelayError):
    """Operation is not valid in the current call phase."""


class MediaPermissionDenied(CallRelayError):
    """Local media capture was refused by the user or the OS."""


class TargetUnreachable(CallRelayError):
    """The remote peer never answered."""


class NegotiationRejected(CallRelayError):
    """A remote description could not be applied."""


class TransportFailure(CallRelayError):
    """Peer connectivity dropped after the call was set up."""
