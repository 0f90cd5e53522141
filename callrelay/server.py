"""Directory & relay server: presence, chat and WebRTC signaling passthrough."""
import logging
import uuid

from dotenv import load_dotenv
from flask import Flask, jsonify, request, session
from flask_cors import CORS
from flask_socketio import SocketIO, emit

from . import protocol
from .config import Config
from .directory import Directory
from .errors import ProtocolError
from .protocol import MessageKind

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def create_app(config=None):
    config = config or Config()
    app = Flask(__name__)
    app.config.from_object(config)

    CORS(app, resources={r"/*": {"origins": app.config["CORS_ORIGINS"]}}, supports_credentials=True)
    socketio = SocketIO(
        app,
        cors_allowed_origins=app.config["CORS_ORIGINS"],
        async_mode=app.config["ASYNC_MODE"],
        logger=app.config["LOG_LEVEL"] == "DEBUG",
        engineio_logger=False,
    )
    directory = Directory(on_change=_broadcaster(socketio, app.config["ANNOUNCE_PRESENCE"]))

    register_routes(app, directory)
    register_handlers(socketio, directory, app.config["MAX_NAME_LENGTH"])
    return app, socketio, directory


def _broadcaster(socketio, announce):
    # runs under the directory lock: one full snapshot per join/leave, in order
    def on_change(event, record, snapshot):
        logger.info("%s %s as %r (session %s); %d member(s)", record.connection_handle,
                    "joined" if event == "join" else "left", record.display_name,
                    record.session_key, len(snapshot))
        socketio.emit(MessageKind.MEMBERSHIP.value, protocol.membership_payload(snapshot))
        if announce:
            verb = "joined" if event == "join" else "left"
            socketio.emit(MessageKind.CHAT.value, protocol.chat_message(
                protocol.SYSTEM_NAME, f"{record.display_name} has {verb} the chat"))
    return on_change


# ------------ HTTP routes ------------
def register_routes(app, directory):
    @app.get("/")
    def index():
        # issue the session key a returning tab is recognised by
        if "session_key" not in session:
            session["session_key"] = uuid.uuid4().hex
            session.permanent = True
        return jsonify(status="online", service="callrelay", members=len(directory))

    @app.get("/members")
    def members():
        return jsonify(members=protocol.membership_payload(directory.snapshot()))


# ------------ Socket.IO (presence / chat / signaling) ------------
def register_handlers(socketio, directory, max_name_length=64):

    @socketio.on("connect")
    def sock_connect(auth=None):
        # a connection is anonymous until it sends user_join
        logger.info("Client connected: %s", request.sid)

    @socketio.on("disconnect")
    def sock_disconnect(reason=None):
        logger.info("Client disconnected: %s (%s)", request.sid, reason)
        directory.leave(request.sid)

    @socketio.on(MessageKind.JOIN.value)
    def user_join(data):
        try:
            name = protocol.parse_display_name(data, max_name_length)
        except ProtocolError as exc:
            logger.warning("Dropped join from %s: %s", request.sid, exc)
            return
        # without an issued cookie the identity only lives as long as the connection
        session_key = session.get("session_key") or request.sid
        directory.join(request.sid, session_key, name)

    @socketio.on(MessageKind.CHAT.value)
    def chat_message(data):
        user = directory.lookup(request.sid)
        if user is None:
            logger.info("Dropped chat from %s: not joined", request.sid)
            return
        try:
            text = protocol.parse_chat_text(data)
        except ProtocolError as exc:
            logger.warning("Dropped chat from %s: %s", request.sid, exc)
            return
        socketio.emit(MessageKind.CHAT.value, protocol.chat_message(user.display_name, text))

    def relay(kind, data):
        sender = directory.lookup(request.sid)
        if sender is None:
            logger.info("Dropped %s from %s: not joined", kind.value, request.sid)
            return
        try:
            envelope = protocol.parse_outbound(kind, data)
        except ProtocolError as exc:
            logger.warning("Dropped %s from %s: %s", kind.value, request.sid, exc)
            return
        target = directory.lookup(envelope.target)
        if target is None:
            # best effort: stale targets are common mid-negotiation
            logger.info("Dropped %s from %s: target %s not connected",
                        kind.value, request.sid, envelope.target)
            return
        forwarded = envelope.stamped(sender.connection_handle, sender.display_name)
        log = logger.debug if kind is MessageKind.CANDIDATE else logger.info
        log("Relaying %s from %s to %s", kind.value, sender.connection_handle, target.connection_handle)
        socketio.emit(kind.value, forwarded.to_forwarded(), to=target.connection_handle)

    @socketio.on(MessageKind.OFFER.value)
    def video_offer(data):
        relay(MessageKind.OFFER, data)

    @socketio.on(MessageKind.ANSWER.value)
    def video_answer(data):
        relay(MessageKind.ANSWER, data)

    @socketio.on(MessageKind.CANDIDATE.value)
    def ice_candidate(data):
        relay(MessageKind.CANDIDATE, data)

    @socketio.on("*")
    def unknown_event(event, data=None):
        logger.warning("Rejected unknown event %r from %s", event, request.sid)
        emit(MessageKind.ERROR.value, {"error": "unknown message kind", "kind": event})

    @socketio.on_error_default
    def handler_error(exc):
        # one connection's failure never reaches the others
        logger.exception("Error handling %s from %s", request.event.get("message"), request.sid)


def main():
    load_dotenv()
    config = Config()
    if config.ASYNC_MODE == "eventlet":
        import eventlet
        eventlet.monkey_patch()
    logging.basicConfig(level=config.LOG_LEVEL, format=LOG_FORMAT)

    app, socketio, _ = create_app(config)
    logger.info("Signaling server running on http://%s:%s", config.HOST, config.PORT)
    socketio.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
