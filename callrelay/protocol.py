"""Wire format shared by the relay server and the call client.

Every Socket.IO event the system exchanges is one :class:`MessageKind`. The
three negotiation kinds travel as :class:`Envelope` objects: clients send
``{target, <field>}`` and the server forwards ``{from, <field>, displayName}``
where ``from`` and ``displayName`` come from the sender's identity record, never
from the client. The payload field is opaque to the server.
"""
import dataclasses
import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ProtocolError


class MessageKind(str, Enum):
    JOIN = "user_join"
    MEMBERSHIP = "user_list"
    CHAT = "message"
    OFFER = "video_offer"
    ANSWER = "video_answer"
    CANDIDATE = "ice_candidate"
    ERROR = "signal_error"

    @classmethod
    def parse(cls, name) -> "MessageKind":
        if isinstance(name, cls):
            return name
        try:
            return cls(name)
        except ValueError:
            raise ProtocolError(f"unknown message kind: {name!r}") from None

    @property
    def is_negotiation(self) -> bool:
        return self in NEGOTIATION_FIELDS


# payload field carried by each negotiation kind
NEGOTIATION_FIELDS = {
    MessageKind.OFFER: "sdp",
    MessageKind.ANSWER: "sdp",
    MessageKind.CANDIDATE: "candidate",
}

SYSTEM_NAME = "System"


@dataclass(frozen=True)
class Envelope:
    kind: MessageKind
    target: Optional[str]
    sender: Optional[str]
    payload: Any
    display_name: Optional[str] = None

    @property
    def field(self) -> str:
        return NEGOTIATION_FIELDS[self.kind]

    def stamped(self, sender: str, display_name: Optional[str] = None) -> "Envelope":
        """Copy with the server-assigned sender, replacing whatever the client claimed."""
        return dataclasses.replace(self, sender=sender, display_name=display_name)

    def to_outbound(self) -> Dict[str, Any]:
        return {"target": self.target, self.field: self.payload}

    def to_forwarded(self) -> Dict[str, Any]:
        data = {"from": self.sender, self.field: self.payload}
        if self.display_name is not None:
            data["displayName"] = self.display_name
        return data


def _negotiation_kind(kind) -> MessageKind:
    kind = MessageKind.parse(kind)
    if not kind.is_negotiation:
        raise ProtocolError(f"{kind.value} is not a negotiation message")
    return kind


def _required_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"missing or invalid '{key}'")
    return value


def parse_outbound(kind, data) -> Envelope:
    """Parse a client -> server negotiation message."""
    kind = _negotiation_kind(kind)
    if not isinstance(data, dict):
        raise ProtocolError("envelope must be an object")
    target = _required_str(data, "target")
    field = NEGOTIATION_FIELDS[kind]
    if data.get(field) is None:
        raise ProtocolError(f"missing '{field}'")
    return Envelope(kind=kind, target=target, sender=None, payload=data[field])


def parse_forwarded(kind, data) -> Envelope:
    """Parse a server -> client negotiation message."""
    kind = _negotiation_kind(kind)
    if not isinstance(data, dict):
        raise ProtocolError("envelope must be an object")
    sender = _required_str(data, "from")
    field = NEGOTIATION_FIELDS[kind]
    if data.get(field) is None:
        raise ProtocolError(f"missing '{field}'")
    display_name = data.get("displayName")
    return Envelope(kind=kind, target=None, sender=sender, payload=data[field],
                    display_name=display_name if isinstance(display_name, str) else None)


def parse_display_name(data, max_length: int = 64) -> str:
    # the browser client sends the bare name, other clients may send {displayName}
    if isinstance(data, dict):
        data = data.get("displayName")
    if not isinstance(data, str) or not data.strip():
        raise ProtocolError("join needs a non-empty display name")
    return data.strip()[:max_length]


def parse_chat_text(data) -> str:
    if isinstance(data, dict):
        data = data.get("text")
    if not isinstance(data, str) or not data.strip():
        raise ProtocolError("chat message needs non-empty text")
    return data


def now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def chat_message(display_name: str, text: str, timestamp: Optional[str] = None) -> Dict[str, str]:
    return {"displayName": display_name, "text": text, "timestamp": timestamp or now_iso()}


def membership_payload(records) -> List[Dict[str, str]]:
    return [{"connectionHandle": r.connection_handle, "displayName": r.display_name}
            for r in records]
