import asyncio
import importlib.util

import pytest

from callrelay import client as client_module
from callrelay.client import SignalingClient, run_console
from callrelay.config import ClientConfig
from callrelay.errors import CallRelayError, CallStateError, MediaPermissionDenied
from callrelay.machine import Phase

from fakes import ANSWER, OFFER, FakeCapture, FakeSio, FakeTransport

MEMBERS = [
    {"connectionHandle": "me", "displayName": "carol"},
    {"connectionHandle": "sid-a", "displayName": "alice"},
    {"connectionHandle": "sid-b", "displayName": "bob"},
]


def run(coro):
    return asyncio.run(coro)


def make_client(capture=None):
    sio = FakeSio()
    transports = []

    def factory(peer):
        transports.append(FakeTransport())
        return transports[-1]

    client = SignalingClient(ClientConfig(display_name="carol"), capture=capture or FakeCapture(),
                             transport_factory=factory, sio=sio)
    events = []
    client.add_listener(lambda event, data: events.append((event, data)))
    return client, sio, transports, events


def test_connect_event_joins_with_display_name():
    async def scenario():
        client, sio, _, _ = make_client()
        await sio.handlers["connect"]()
        assert sio.emitted == [("user_join", "carol")]
    run(scenario())


def test_every_server_kind_has_a_handler():
    async def scenario():
        _, sio, _, _ = make_client()
        for name in ("user_list", "message", "video_offer", "video_answer", "ice_candidate",
                     "signal_error", "*", "connect", "disconnect"):
            assert name in sio.handlers
        assert "user_join" not in sio.handlers
    run(scenario())


def test_membership_snapshot_replaces_members_and_notifies():
    async def scenario():
        client, sio, _, events = make_client()
        await sio.handlers["user_list"](MEMBERS)
        assert client.members == MEMBERS
        assert events[-1] == ("membership", {"members": MEMBERS})

        await client.dispatch("user_list", MEMBERS[:1])
        assert client.members == MEMBERS[:1]
    run(scenario())


def test_chat_is_reported_to_listeners():
    async def scenario():
        client, _, _, events = make_client()
        message = {"displayName": "alice", "text": "hi", "timestamp": "2026-01-01 10:00:00 UTC"}
        await client.dispatch("message", message)
        assert events == [("chat", message)]
    run(scenario())


def test_incoming_offer_is_answered_to_its_sender():
    async def scenario():
        client, sio, transports, _ = make_client()
        await client.dispatch("video_offer", {"from": "sid-a", "sdp": OFFER, "displayName": "alice"})

        assert client.machine.phase is Phase.ANSWER_SENT
        assert client.machine.peer == "sid-a"
        assert transports[0].remote == OFFER
        assert sio.emitted == [("video_answer", {"target": "sid-a", "sdp": ANSWER})]
    run(scenario())


def test_candidates_reach_the_machine():
    async def scenario():
        client, _, transports, _ = make_client()
        await client.dispatch("video_offer", {"from": "sid-a", "sdp": OFFER})
        await client.dispatch("ice_candidate", {"from": "sid-a", "candidate": {"candidate": "c1"}})
        assert transports[0].candidates == [{"candidate": "c1"}]
    run(scenario())


@pytest.mark.parametrize("name, data", [
    ("video_hangup", {"from": "sid-a"}),
    ("video_offer", {"sdp": OFFER}),
    ("video_answer", "not an object"),
    ("user_list", {"not": "a list"}),
    ("message", {"displayName": "alice"}),
    ("user_join", "alice"),
])
def test_unknown_or_malformed_events_are_dropped(name, data):
    async def scenario():
        client, sio, transports, events = make_client()
        await client.dispatch(name, data)
        assert client.machine.phase is Phase.IDLE
        assert transports == []
        assert sio.emitted == []
        assert events == []
    run(scenario())


def test_catch_all_handler_routes_through_dispatch():
    async def scenario():
        client, sio, _, _ = make_client()
        await sio.handlers["*"]("user_list", MEMBERS)
        assert client.members == MEMBERS
    run(scenario())


def test_server_error_notice_is_logged(caplog):
    async def scenario():
        client, _, _, events = make_client()
        await client.dispatch("signal_error", {"error": "unknown message kind", "kind": "x"})
        assert events == []
    with caplog.at_level("WARNING", logger="callrelay.client"):
        run(scenario())
    assert "unknown message kind" in caplog.text


def test_call_resolves_display_name_to_handle():
    async def scenario():
        client, sio, _, _ = make_client()
        await client.dispatch("user_list", MEMBERS)
        await client.call("bob")

        assert client.machine.peer == "sid-b"
        assert sio.emitted == [("video_offer", {"target": "sid-b", "sdp": OFFER})]
    run(scenario())


def test_call_accepts_a_connection_handle():
    async def scenario():
        client, _, _, _ = make_client()
        await client.dispatch("user_list", MEMBERS)
        await client.call("sid-a")
        assert client.machine.peer == "sid-a"
    run(scenario())


@pytest.mark.parametrize("who", ["dave", "carol"])
def test_call_to_unknown_member_or_self_by_name_is_refused(who):
    async def scenario():
        client, sio, _, _ = make_client()
        await client.dispatch("user_list", MEMBERS)
        with pytest.raises(CallRelayError):
            await client.call(who)
        assert client.machine.phase is Phase.IDLE
        assert sio.emitted == []
    run(scenario())


def test_peer_leaving_mid_negotiation_ends_the_call():
    async def scenario():
        client, _, transports, events = make_client()
        await client.dispatch("user_list", MEMBERS)
        await client.call("bob")

        await client.dispatch("user_list", MEMBERS[:2])
        assert client.machine.phase is Phase.IDLE
        assert transports[0].closed
        ended = [d for e, d in events if e == "ended"]
        assert ended[-1]["reason"] == "peer left"
    run(scenario())


def test_connected_call_survives_a_membership_blip():
    async def scenario():
        client, _, transports, _ = make_client()
        await client.dispatch("user_list", MEMBERS)
        await client.call("bob")
        await client.dispatch("video_answer", {"from": "sid-b", "sdp": ANSWER})
        await transports[0].on_state_change("connected")

        await client.dispatch("user_list", MEMBERS[:2])
        assert client.machine.phase is Phase.CONNECTED
    run(scenario())


def test_wait_for_member_returns_once_listed():
    async def scenario():
        client, _, _, _ = make_client()
        waiter = asyncio.ensure_future(client.wait_for_member("alice", timeout=1))
        await asyncio.sleep(0)
        await client.dispatch("user_list", MEMBERS[:1])
        await asyncio.sleep(0)
        assert not waiter.done()

        await client.dispatch("user_list", MEMBERS)
        assert (await waiter)["connectionHandle"] == "sid-a"
    run(scenario())


def test_close_hangs_up_and_disconnects():
    async def scenario():
        client, _, transports, events = make_client()
        await client.dispatch("user_list", MEMBERS)
        await client.call("bob")
        await client.close()

        assert transports[0].closed
        assert [d for e, d in events if e == "ended"][-1]["reason"] == "quit"
    run(scenario())


def test_check_media_opens_and_releases_tracks():
    async def scenario():
        capture = FakeCapture()
        client, _, _, _ = make_client(capture)
        assert await client.check_media() == ["track", "track"]
        assert capture.live == []
    run(scenario())


def test_check_media_refuses_during_a_call_and_reports_denial():
    async def scenario():
        client, _, _, _ = make_client()
        await client.dispatch("user_list", MEMBERS)
        await client.call("bob")
        with pytest.raises(CallStateError):
            await client.check_media()

        denied, _, _, _ = make_client(FakeCapture(deny=True))
        with pytest.raises(MediaPermissionDenied):
            await denied.check_media()
    run(scenario())


def scripted_input(monkeypatch, *lines):
    remaining = list(lines)

    def fake_input(prompt=""):
        if not remaining:
            raise EOFError
        return remaining.pop(0)

    monkeypatch.setattr("builtins.input", fake_input)
    monkeypatch.setattr(client_module, "fetch_session_cookie", lambda url: None)


def test_console_reports_denied_camera_on_startup_call(monkeypatch, capsys):
    scripted_input(monkeypatch)

    async def scenario():
        client, _, transports, _ = make_client(FakeCapture(deny=True))
        await client.dispatch("user_list", MEMBERS)
        await run_console(client.config, call="bob", client=client)
        assert client.machine.phase is Phase.IDLE
        assert transports == []
    run(scenario())

    assert "[error] camera blocked" in capsys.readouterr().out


def test_console_gives_up_waiting_for_an_absent_member(monkeypatch, capsys):
    scripted_input(monkeypatch)
    monkeypatch.setattr(client_module, "MEMBER_WAIT", 0.01)

    async def scenario():
        client, sio, _, _ = make_client()
        await run_console(client.config, call="dave", client=client)
        assert sio.emitted == []
    run(scenario())

    assert "dave did not come online" in capsys.readouterr().out


def test_console_commands(monkeypatch, capsys):
    scripted_input(monkeypatch, "/testmedia", "/hangup", "/call nobody", "hello", "/quit", "never read")

    async def scenario():
        capture = FakeCapture()
        client, sio, _, _ = make_client(capture)
        await client.dispatch("user_list", MEMBERS)
        await run_console(client.config, client=client)
        assert capture.live == []
        assert sio.emitted == [("message", "hello")]
    run(scenario())

    out = capsys.readouterr().out
    assert "[media] ok: track, track" in out
    assert "[call] no call in progress" in out
    assert "[error] nobody is not online" in out


def test_async_client_transport_is_installed():
    # socketio.AsyncClient.connect needs aiohttp for its websocket and polling transports
    assert importlib.util.find_spec("aiohttp") is not None
