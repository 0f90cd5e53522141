from .errors import (
    CallRelayError,
    CallStateError,
    MediaPermissionDenied,
    NegotiationRejected,
    ProtocolError,
    TargetUnreachable,
    TransportFailure,
)
from .protocol import Envelope, MessageKind

__version__ = "0.1.0"

__all__ = [
    "CallRelayError",
    "CallStateError",
    "Envelope",
    "MediaPermissionDenied",
    "MessageKind",
    "NegotiationRejected",
    "ProtocolError",
    "TargetUnreachable",
    "TransportFailure",
]
