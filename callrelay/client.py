"""Socket.IO signaling client and console runner."""
import argparse
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import requests
import socketio

from . import protocol
from .config import ClientConfig
from .errors import CallRelayError, CallStateError, ProtocolError
from .machine import CallStateMachine, Phase
from .protocol import Envelope, MessageKind

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

CALL_COMMAND = "/call "
HANGUP_COMMAND = "/hangup"
LIST_COMMAND = "/list"
TEST_MEDIA_COMMAND = "/testmedia"
CLOSE_COMMAND = "/quit"


def fetch_session_cookie(server_url: str) -> Optional[str]:
    """GET / once so the server issues the session key cookie."""
    r = requests.get(server_url.rstrip("/") + "/", timeout=5)
    r.raise_for_status()
    cookies = r.cookies.get_dict()
    if not cookies:
        return None
    return "; ".join(f"{k}={v}" for k, v in cookies.items())


def _default_collaborators(config):
    from .rtc import AiortcTransport, DeviceCapture, SyntheticCapture

    if config.synthetic_media:
        capture = SyntheticCapture()
    else:
        capture = DeviceCapture(config.video_device, config.audio_device, config.media_format)
    return capture, lambda peer: AiortcTransport(config.ice_servers)


class SignalingClient:
    def __init__(self, config: ClientConfig, capture=None, transport_factory=None, sio=None):
        self.config = config
        self.sio = sio if sio is not None else socketio.AsyncClient()
        if capture is None or transport_factory is None:
            default_capture, default_factory = _default_collaborators(config)
            capture = capture or default_capture
            transport_factory = transport_factory or default_factory
        self.capture = capture
        self.machine = CallStateMachine(self.send_envelope, capture, transport_factory,
                                        answer_timeout=config.answer_timeout)
        self.members: List[Dict[str, str]] = []
        self._listeners: List[Callable[[str, Dict[str, Any]], None]] = []
        self._membership_changed = asyncio.Event()
        self._register()

    def add_listener(self, listener: Callable[[str, Dict[str, Any]], None]) -> None:
        """``listener(event, data)`` for membership, chat and call events."""
        self._listeners.append(listener)
        self.machine.add_listener(listener)

    def _notify(self, event, **data):
        for listener in list(self._listeners):
            try:
                listener(event, data)
            except Exception:
                logger.exception("Client listener failed on %s", event)

    @property
    def connection_handle(self) -> Optional[str]:
        return self.sio.get_sid()

    # ------------ outgoing ------------
    async def connect(self):
        cookie = await asyncio.to_thread(fetch_session_cookie, self.config.server_url)
        headers = {"Cookie": cookie} if cookie else {}
        await self.sio.connect(self.config.server_url, headers=headers)

    async def close(self):
        await self.machine.end_call(reason="quit")
        await self.sio.disconnect()

    async def join(self):
        await self.sio.emit(MessageKind.JOIN.value, self.config.display_name)

    async def say(self, text: str):
        await self.sio.emit(MessageKind.CHAT.value, text)

    async def send_envelope(self, envelope: Envelope):
        await self.sio.emit(envelope.kind.value, envelope.to_outbound())

    async def call(self, who: str):
        member = self.find_member(who)
        if member is None:
            raise CallRelayError(f"{who} is not online")
        await self.machine.start_call(member["connectionHandle"])

    async def check_media(self) -> List[str]:
        """Open and release the local tracks once; returns their kinds."""
        if self.machine.session is not None:
            raise CallStateError("media is in use by the current call")
        tracks = await self.capture.acquire()
        try:
            return [getattr(track, "kind", "track") for track in tracks]
        finally:
            self.capture.release(tracks)

    def find_member(self, who: str) -> Optional[Dict[str, str]]:
        own = self.connection_handle
        for member in self.members:
            if member["connectionHandle"] == who:
                return member
        for member in self.members:
            if member["displayName"] == who and member["connectionHandle"] != own:
                return member
        return None

    async def wait_for_member(self, who: str, timeout: Optional[float] = None) -> Dict[str, str]:
        async def wait():
            while self.find_member(who) is None:
                self._membership_changed.clear()
                await self._membership_changed.wait()
            return self.find_member(who)
        return await asyncio.wait_for(wait(), timeout)

    # ------------ incoming ------------
    def _register(self):
        @self.sio.event
        async def connect():
            logger.info("Connected to %s as %s", self.config.server_url, self.connection_handle)
            # also runs after reconnects; the session cookie keeps our identity
            await self.join()

        @self.sio.event
        async def disconnect(*args):
            logger.info("Disconnected from %s", self.config.server_url)

        for kind in MessageKind:
            if kind is not MessageKind.JOIN:
                self.sio.on(kind.value, self._handler_for(kind))

        @self.sio.on("*")
        async def unknown_event(event, data=None):
            await self.dispatch(event, data)

    def _handler_for(self, kind):
        async def handler(data=None):
            await self.dispatch(kind.value, data)
        return handler

    async def dispatch(self, name: str, data: Any = None) -> None:
        """Route one server event by kind; unknown or malformed events are dropped."""
        try:
            kind = MessageKind.parse(name)
            if kind is MessageKind.MEMBERSHIP:
                await self._on_membership(data)
            elif kind is MessageKind.CHAT:
                self._notify("chat", **self._chat_fields(data))
            elif kind is MessageKind.ERROR:
                logger.warning("Server rejected a message: %s", data)
            elif kind.is_negotiation:
                await self._on_negotiation(protocol.parse_forwarded(kind, data))
            else:
                raise ProtocolError(f"{kind.value} is never sent by the server")
        except ProtocolError as exc:
            logger.warning("Dropped %r from server: %s", name, exc)

    @staticmethod
    def _chat_fields(data):
        if not isinstance(data, dict) or not isinstance(data.get("text"), str):
            raise ProtocolError("chat message without text")
        return {"displayName": data.get("displayName"), "text": data["text"],
                "timestamp": data.get("timestamp")}

    async def _on_membership(self, data):
        if not isinstance(data, list):
            raise ProtocolError("membership snapshot must be a list")
        members = [m for m in data if isinstance(m, dict) and "connectionHandle" in m]
        self.members = members
        self._membership_changed.set()
        self._notify("membership", members=members)

        # a peer that vanished mid-negotiation will never answer
        peer = self.machine.peer
        handles = {m["connectionHandle"] for m in members}
        if peer is not None and peer not in handles and self.machine.phase is not Phase.CONNECTED:
            logger.info("%s left before the call was set up", peer)
            await self.machine.end_call(peer, reason="peer left")

    async def _on_negotiation(self, envelope: Envelope):
        if envelope.kind is MessageKind.OFFER:
            await self.machine.handle_incoming_offer(envelope.sender, envelope.payload)
        elif envelope.kind is MessageKind.ANSWER:
            await self.machine.handle_incoming_answer(envelope.sender, envelope.payload)
        else:
            await self.machine.handle_incoming_candidate(envelope.sender, envelope.payload)


# ------------ console ------------
def _print_event(event, data):
    if event == "membership":
        names = ", ".join(f"{m['displayName']} ({m['connectionHandle']})" for m in data["members"])
        print(f"[online] {names or '-'}")
    elif event == "chat":
        print(f"[{data['timestamp']}] {data['displayName']}: {data['text']}")
    elif event == "phase":
        print(f"[call] {data['peer']}: {data['phase'].value}")
    elif event == "failed":
        print(f"[call] failed with {data['peer']}: {data['error']}")
    elif event == "ended":
        print(f"[call] ended with {data['peer']} ({data['reason']})")
    elif event == "busy":
        print(f"[call] {data['peer']} called while you were busy")
    elif event == "track":
        print(f"[call] receiving {data['track'].kind} from {data['peer']}")


MEMBER_WAIT = 30


async def _first_call(client, who):
    try:
        await client.wait_for_member(who, timeout=MEMBER_WAIT)
    except asyncio.TimeoutError:
        print(f"[error] {who} did not come online within {MEMBER_WAIT}s")
        return
    try:
        await client.call(who)
    except CallRelayError as exc:
        print(f"[error] {exc}")


async def run_console(config: ClientConfig, call: Optional[str] = None, client: Optional[SignalingClient] = None):
    client = client or SignalingClient(config)
    client.add_listener(_print_event)
    await client.connect()
    loop = asyncio.get_running_loop()
    try:
        if call:
            await _first_call(client, call)
        while True:
            try:
                cmd = await loop.run_in_executor(None, input)
            except EOFError:
                break
            cmd = cmd.strip()
            if not cmd:
                continue
            try:
                if cmd == CLOSE_COMMAND:
                    break
                elif cmd == LIST_COMMAND:
                    _print_event("membership", {"members": client.members})
                elif cmd == TEST_MEDIA_COMMAND:
                    kinds = await client.check_media()
                    print(f"[media] ok: {', '.join(kinds) or 'no tracks'}")
                elif cmd == HANGUP_COMMAND:
                    if not await client.machine.end_call():
                        print("[call] no call in progress")
                elif cmd.startswith(CALL_COMMAND):
                    await client.call(cmd[len(CALL_COMMAND):].strip())
                else:
                    await client.say(cmd)
            except CallRelayError as exc:
                print(f"[error] {exc}")
    finally:
        await client.close()


def main():
    ap = argparse.ArgumentParser(description="callrelay console client")
    ap.add_argument("--server", help="http://host:port of the relay server")
    ap.add_argument("--name", help="display name")
    ap.add_argument("--call", help="call this member (name or id) once online")
    ap.add_argument("--synthetic", action="store_true", default=None,
                    help="send generated tracks instead of opening devices")
    ap.add_argument("--answer-timeout", type=float, help="give up on unanswered calls after N seconds")
    ap.add_argument("--video-device")
    ap.add_argument("--audio-device")
    ap.add_argument("--format", dest="media_format", help="ffmpeg input format for the devices")
    ap.add_argument("--log-level", default="WARNING")
    args = ap.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format=LOG_FORMAT)
    config = ClientConfig.from_env(
        server_url=args.server,
        display_name=args.name,
        synthetic_media=args.synthetic,
        answer_timeout=args.answer_timeout,
        video_device=args.video_device,
        audio_device=args.audio_device,
        media_format=args.media_format,
    )
    try:
        asyncio.run(run_console(config, call=args.call))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
