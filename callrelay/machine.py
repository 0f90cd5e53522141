"""Client-side call state machine.

One :class:`CallSession` exists per call; a client holds at most one at a time.
The machine sequences media acquisition, offer/answer exchange and ICE candidate
delivery while the relay delivers those messages in whatever order the network
produces.

Rules the machine enforces:

* a remote candidate is never handed to the transport before the remote
  description is applied; early ones wait in ``pending_candidates`` and are
  applied in arrival order right after the description lands;
* applying the description, draining the buffer and applying later candidates
  hold the session lock, so nothing overtakes the drain;
* every ``await`` on a collaborator re-checks on resumption that the session is
  still the current one and in the phase it started from. A media grant that
  arrives after the call ended is released, not used.
"""
import abc
import asyncio
import collections
import functools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from .errors import (
    CallRelayError,
    CallStateError,
    NegotiationRejected,
    TargetUnreachable,
    TransportFailure,
)
from .protocol import Envelope, MessageKind

logger = logging.getLogger(__name__)


class Phase(Enum):
    IDLE = "idle"
    AWAITING_LOCAL_MEDIA = "awaiting_local_media"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    ANSWER_SENT = "answer_sent"
    CONNECTED = "connected"
    ENDED = "ended"


TERMINAL_TRANSPORT_STATES = frozenset({"disconnected", "failed"})


class MediaCapture(abc.ABC):
    """Supplies and releases the local audio/video tracks."""

    @abc.abstractmethod
    async def acquire(self) -> List[Any]:
        """Return the local tracks, or raise MediaPermissionDenied."""

    @abc.abstractmethod
    def release(self, tracks: List[Any]) -> None:
        """Stop tracks previously returned by acquire()."""


class PeerTransport(abc.ABC):
    """Negotiation engine for one peer connection.

    The machine binds three async callbacks before using a transport:
    ``on_candidate(candidate)`` for locally gathered candidates,
    ``on_state_change(state)`` for connectivity changes and
    ``on_track(track)`` for remote media.
    """

    on_candidate: Optional[Callable[[Any], Awaitable[None]]] = None
    on_state_change: Optional[Callable[[str], Awaitable[None]]] = None
    on_track: Optional[Callable[[Any], Awaitable[None]]] = None

    def bind(self, on_candidate, on_state_change, on_track):
        self.on_candidate = on_candidate
        self.on_state_change = on_state_change
        self.on_track = on_track

    @abc.abstractmethod
    def add_tracks(self, tracks: List[Any]) -> None:
        pass

    @abc.abstractmethod
    async def create_offer(self) -> Dict[str, Any]:
        """Create the offer, set it as local description and return it."""

    @abc.abstractmethod
    async def create_answer(self) -> Dict[str, Any]:
        """Create the answer, set it as local description and return it."""

    @abc.abstractmethod
    async def set_remote_description(self, description: Dict[str, Any]) -> None:
        """Apply the remote description; raise NegotiationRejected if it is unusable."""

    @abc.abstractmethod
    async def add_candidate(self, candidate: Any) -> None:
        pass

    @abc.abstractmethod
    async def close(self) -> None:
        pass


@dataclass(eq=False)
class CallSession:
    peer: str
    outgoing: bool
    phase: Phase = Phase.IDLE
    transport: Optional[PeerTransport] = None
    tracks: List[Any] = field(default_factory=list)
    local_description: Optional[Dict[str, Any]] = None
    remote_description_applied: bool = False
    pending_candidates: Deque[Any] = field(default_factory=collections.deque)
    # local candidates gathered before our description went out
    unsent_candidates: List[Any] = field(default_factory=list)
    transport_state: str = "new"
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class CallStateMachine:
    def __init__(self, send: Callable[[Envelope], Awaitable[None]], capture: MediaCapture,
                 transport_factory: Callable[[str], PeerTransport],
                 answer_timeout: Optional[float] = None):
        self._send = send
        self._capture = capture
        self._transport_factory = transport_factory
        self.answer_timeout = answer_timeout
        self._session: Optional[CallSession] = None
        self._listeners: List[Callable[[str, Dict[str, Any]], None]] = []
        self._timeout_task: Optional[asyncio.Task] = None

    @property
    def session(self) -> Optional[CallSession]:
        return self._session

    @property
    def phase(self) -> Phase:
        return self._session.phase if self._session is not None else Phase.IDLE

    @property
    def peer(self) -> Optional[str]:
        return self._session.peer if self._session is not None else None

    @property
    def retained_tracks(self) -> int:
        return len(self._session.tracks) if self._session is not None else 0

    def add_listener(self, listener: Callable[[str, Dict[str, Any]], None]) -> None:
        """Register ``listener(event, data)`` for phase/failed/ended/busy/track events."""
        self._listeners.append(listener)

    def _notify(self, event, **data):
        for listener in list(self._listeners):
            try:
                listener(event, data)
            except Exception:
                logger.exception("Call listener failed on %s", event)

    def _set_phase(self, session, phase):
        session.phase = phase
        logger.info("Call with %s: %s", session.peer, phase.value)
        self._notify("phase", peer=session.peer, phase=phase)

    def _is_current(self, session, *phases):
        return self._session is session and (not phases or session.phase in phases)

    # ------------ user operations ------------
    async def start_call(self, peer: str) -> None:
        """Call ``peer``. Errors are reported to listeners and re-raised unless the call was already ended."""
        if not peer:
            raise CallStateError("no peer to call")
        if self._session is not None:
            raise CallStateError(
                f"already in a call with {self._session.peer} ({self._session.phase.value})")
        session = CallSession(peer=peer, outgoing=True)
        self._session = session
        self._set_phase(session, Phase.AWAITING_LOCAL_MEDIA)
        await self._guarded(session, self._send_offer(session), reraise=True)

    async def end_call(self, peer: Optional[str] = None, reason: str = "hangup") -> bool:
        """Hang up. Returns False when there was no call (with ``peer``) to end."""
        session = self._session
        if session is None or session.phase in (Phase.IDLE, Phase.ENDED):
            return False
        if peer is not None and peer != session.peer:
            logger.info("Not in a call with %s, nothing to end", peer)
            return False
        await self._teardown(session, reason)
        return True

    # ------------ remote events ------------
    async def handle_incoming_offer(self, sender: str, sdp: Dict[str, Any]) -> None:
        if self._session is not None:
            # no call waiting
            logger.info("Ignoring offer from %s: busy with %s (%s)",
                        sender, self._session.peer, self._session.phase.value)
            self._notify("busy", peer=sender)
            return
        session = CallSession(peer=sender, outgoing=False)
        self._session = session
        self._set_phase(session, Phase.OFFER_RECEIVED)
        self._set_phase(session, Phase.AWAITING_LOCAL_MEDIA)
        await self._guarded(session, self._send_answer(session, sdp), reraise=False)

    async def handle_incoming_answer(self, sender: str, sdp: Dict[str, Any]) -> None:
        session = self._session
        if (session is None or session.peer != sender or session.phase is not Phase.OFFER_SENT
                or session.remote_description_applied):
            logger.info("Ignoring answer from %s in phase %s", sender, self.phase.value)
            return
        self._cancel_answer_timeout()
        await self._guarded(session, self._apply_remote_description(session, sdp, Phase.OFFER_SENT),
                            reraise=False)

    async def handle_incoming_candidate(self, sender: str, candidate: Any) -> None:
        session = self._session
        if session is None or session.peer != sender:
            logger.debug("Dropping candidate from %s: no call in progress", sender)
            return
        if not session.remote_description_applied:
            session.pending_candidates.append(candidate)
            logger.debug("Buffered candidate from %s (%d pending)", sender, len(session.pending_candidates))
            return
        async with session.lock:
            if self._is_current(session):
                await self._add_candidate(session, candidate)

    # ------------ negotiation steps ------------
    async def _guarded(self, session, steps, reraise):
        try:
            await steps
        except Exception as exc:
            # the user may have ended the call meanwhile
            current = self._session is session
            await self._fail(session, exc)
            if (reraise and current) or not isinstance(exc, CallRelayError):
                raise

    async def _acquire_media(self, session) -> bool:
        tracks = await self._capture.acquire()
        if not self._is_current(session, Phase.AWAITING_LOCAL_MEDIA):
            logger.info("Discarding late media grant for call with %s", session.peer)
            self._capture.release(tracks)
            return False
        session.tracks = list(tracks)
        transport = self._transport_factory(session.peer)
        transport.bind(
            on_candidate=functools.partial(self._local_candidate, session),
            on_state_change=functools.partial(self._transport_state, session),
            on_track=functools.partial(self._remote_track, session),
        )
        session.transport = transport
        transport.add_tracks(session.tracks)
        return True

    async def _send_offer(self, session):
        if not await self._acquire_media(session):
            return
        offer = await session.transport.create_offer()
        if not self._is_current(session, Phase.AWAITING_LOCAL_MEDIA):
            return
        session.local_description = offer
        self._set_phase(session, Phase.OFFER_SENT)
        await self._send(Envelope(MessageKind.OFFER, target=session.peer, sender=None, payload=offer))
        await self._flush_local_candidates(session)
        self._arm_answer_timeout(session)

    async def _send_answer(self, session, sdp):
        if not await self._acquire_media(session):
            return
        if not await self._apply_remote_description(session, sdp, Phase.AWAITING_LOCAL_MEDIA):
            return
        answer = await session.transport.create_answer()
        if not self._is_current(session, Phase.AWAITING_LOCAL_MEDIA):
            return
        session.local_description = answer
        self._set_phase(session, Phase.ANSWER_SENT)
        await self._send(Envelope(MessageKind.ANSWER, target=session.peer, sender=None, payload=answer))
        await self._flush_local_candidates(session)
        self._maybe_connected(session)

    async def _apply_remote_description(self, session, description, phase) -> bool:
        async with session.lock:
            try:
                await session.transport.set_remote_description(description)
            except NegotiationRejected:
                raise
            except Exception as exc:
                raise NegotiationRejected(f"remote description from {session.peer} rejected: {exc}") from exc
            if not self._is_current(session, phase):
                return False
            buffered = list(session.pending_candidates)
            session.pending_candidates.clear()
            session.remote_description_applied = True
            if buffered:
                logger.info("Applying %d buffered candidate(s) from %s", len(buffered), session.peer)
            for candidate in buffered:
                if not self._is_current(session):
                    break
                await self._add_candidate(session, candidate)
        self._maybe_connected(session)
        return True

    async def _add_candidate(self, session, candidate):
        try:
            await session.transport.add_candidate(candidate)
        except Exception as exc:
            # a bad path is not fatal, the other candidates may still connect
            logger.warning("Could not add candidate from %s: %s", session.peer, exc)

    def _maybe_connected(self, session):
        if (self._is_current(session, Phase.OFFER_SENT, Phase.ANSWER_SENT)
                and session.remote_description_applied
                and session.transport_state == "connected"):
            self._set_phase(session, Phase.CONNECTED)

    # ------------ transport callbacks ------------
    async def _local_candidate(self, session, candidate):
        if not self._is_current(session):
            return
        if session.local_description is None:
            session.unsent_candidates.append(candidate)
            return
        await self._send(Envelope(MessageKind.CANDIDATE, target=session.peer, sender=None, payload=candidate))

    async def _flush_local_candidates(self, session):
        unsent, session.unsent_candidates = session.unsent_candidates, []
        for candidate in unsent:
            await self._send(Envelope(MessageKind.CANDIDATE, target=session.peer, sender=None, payload=candidate))

    async def _transport_state(self, session, state):
        if not self._is_current(session):
            return
        session.transport_state = state
        logger.info("Transport to %s is %s", session.peer, state)
        if state == "connected":
            self._maybe_connected(session)
        elif state in TERMINAL_TRANSPORT_STATES:
            # no reconnection attempt
            await self._teardown(session, state, error=TransportFailure(f"connection {state}"))

    async def _remote_track(self, session, track):
        if self._is_current(session):
            self._notify("track", peer=session.peer, track=track)

    # ------------ teardown ------------
    def _arm_answer_timeout(self, session):
        if self.answer_timeout is None:
            return
        self._timeout_task = asyncio.ensure_future(self._answer_deadline(session))

    async def _answer_deadline(self, session):
        await asyncio.sleep(self.answer_timeout)
        if self._is_current(session, Phase.OFFER_SENT) and not session.remote_description_applied:
            await self._fail(session, TargetUnreachable(
                f"{session.peer} did not answer within {self.answer_timeout}s"))

    def _cancel_answer_timeout(self):
        task, self._timeout_task = self._timeout_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _fail(self, session, exc):
        if not self._is_current(session):
            logger.debug("Ignoring %r from finished call with %s", exc, session.peer)
            return
        logger.warning("Call with %s failed: %s", session.peer, exc)
        self._notify("failed", peer=session.peer, error=exc)
        await self._teardown(session, type(exc).__name__, error=exc)

    async def _teardown(self, session, reason, error=None):
        if self._session is not session:
            return
        # detach first so in-flight steps see a stale session on resumption
        self._session = None
        self._cancel_answer_timeout()
        self._set_phase(session, Phase.ENDED)
        tracks, session.tracks = session.tracks, []
        if tracks:
            self._capture.release(tracks)
        session.pending_candidates.clear()
        session.unsent_candidates.clear()
        if session.transport is not None:
            try:
                await session.transport.close()
            except Exception as exc:
                logger.warning("Error closing transport to %s: %s", session.peer, exc)
        self._notify("ended", peer=session.peer, reason=reason, error=error)
        logger.info("Call with %s: %s", session.peer, Phase.IDLE.value)
        self._notify("phase", peer=session.peer, phase=Phase.IDLE)
