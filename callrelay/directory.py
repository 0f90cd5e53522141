"""Registry of joined identities.

The directory is the only writer of the membership map. Every mutation and the
snapshot handed to ``on_change`` happen under one lock, so the broadcast that
follows a join or leave reflects exactly that mutation and broadcasts leave in
the order the events were processed.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityRecord:
    connection_handle: str
    display_name: str
    session_key: str


MembershipSnapshot = Tuple[IdentityRecord, ...]


class Directory:
    def __init__(self, on_change: Optional[Callable[[str, IdentityRecord, MembershipSnapshot], None]] = None):
        self._lock = threading.Lock()
        self._records: Dict[str, IdentityRecord] = {}  # session_key -> record, join order
        self._handles: Dict[str, str] = {}             # connection_handle -> session_key
        self._on_change = on_change

    def join(self, connection_handle: str, session_key: str, display_name: str) -> MembershipSnapshot:
        """Register or replace the record for ``session_key`` and broadcast."""
        with self._lock:
            prior = self._records.get(session_key)
            if prior is not None and prior.connection_handle != connection_handle:
                # rejoin from a new connection: the old handle stops resolving
                self._handles.pop(prior.connection_handle, None)
                logger.info("Session %s moved from %s to %s",
                            session_key, prior.connection_handle, connection_handle)
            previous_key = self._handles.get(connection_handle)
            if previous_key is not None and previous_key != session_key:
                self._records.pop(previous_key, None)

            record = IdentityRecord(connection_handle, display_name, session_key)
            self._records[session_key] = record
            self._handles[connection_handle] = session_key
            snapshot = tuple(self._records.values())
            if self._on_change is not None:
                self._on_change("join", record, snapshot)
            return snapshot

    def leave(self, connection_handle: str) -> Optional[MembershipSnapshot]:
        """Drop the record currently bound to ``connection_handle``.

        Returns the new snapshot, or None when the handle never joined or was
        superseded by a rejoin (nothing is broadcast in that case).
        """
        with self._lock:
            session_key = self._handles.pop(connection_handle, None)
            if session_key is None:
                return None
            record = self._records.pop(session_key)
            snapshot = tuple(self._records.values())
            if self._on_change is not None:
                self._on_change("leave", record, snapshot)
            return snapshot

    def lookup(self, connection_handle: str) -> Optional[IdentityRecord]:
        with self._lock:
            session_key = self._handles.get(connection_handle)
            if session_key is None:
                return None
            return self._records.get(session_key)

    def snapshot(self) -> MembershipSnapshot:
        with self._lock:
            return tuple(self._records.values())

    def __len__(self):
        with self._lock:
            return len(self._records)
