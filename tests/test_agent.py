from __future__ import annotations

import asyncio

import pytest

from caption_relay.config import Settings
from caption_relay.schemas.captions import CaptionEvent, SessionState
from caption_relay.transport.agent import TransportAgent
from caption_relay.transport.connection import ConnectionPhase
from caption_relay.transport.host import LocalTabHost
from tests.helpers import FakeConnector, RecordingSleep, caption_node, meeting_document, settle


def _agent(connector, host=None, **settings_overrides):
    sleep = RecordingSleep()
    agent = TransportAgent(
        host=host,
        connector=connector,
        settings=Settings(**settings_overrides),
        sleep=sleep,
    )
    notes = []
    agent.add_observer(notes.append)
    return agent, sleep, notes


def _connection_flags(notes):
    return [n.payload["isConnected"] for n in notes if n.action == "CONNECTION_STATUS"]


def test_connect_registers_and_notifies():
    async def scenario():
        connector = FakeConnector([True])
        agent, _, notes = _agent(connector)
        await agent.start()
        await agent.drain()

        socket = connector.sockets[0]
        assert socket.sent == [{"type": "REGISTER", "clientType": "python-agent", "version": "1.0.0"}]
        assert agent.state.phase == ConnectionPhase.CONNECTED
        assert _connection_flags(notes) == [True]

        assert await agent.connect() is True
        assert connector.calls == 1
        await agent.stop()

    asyncio.run(scenario())


def test_reconnect_gives_up_after_ten_failed_attempts():
    async def scenario():
        connector = FakeConnector(default=False)
        agent, sleep, notes = _agent(connector)
        await agent.start()
        await settle(300)

        assert agent.state.phase == ConnectionPhase.EXHAUSTED
        assert agent.state.reconnect_attempts == 10
        # initial attempt + 10 retries
        assert connector.calls == 11
        assert sleep.delays == [5.0] * 10
        errors = [n for n in notes if n.action == "ERROR"]
        assert len(errors) == 1 and errors[0].payload["fatal"] is True

        await settle(100)
        assert connector.calls == 11

        connector.default = True
        await agent.restart()
        assert agent.is_connected
        assert agent.state.reconnect_attempts == 0
        await agent.stop()

    asyncio.run(scenario())


def test_scenario_c_drop_then_success_on_third_attempt():
    async def scenario():
        connector = FakeConnector([True, False, False, True])
        agent, sleep, notes = _agent(connector)
        await agent.start()
        assert agent.is_connected

        connector.sockets[0].drop()
        await settle(100)

        assert connector.calls == 4
        assert sleep.delays == [5.0, 5.0, 5.0]
        assert agent.is_connected
        assert agent.state.reconnect_attempts == 0
        assert agent.get_connection_status()["isConnected"] is True
        assert _connection_flags(notes) == [True, False, True]
        await agent.drain()
        assert connector.sockets[1].sent_types() == ["REGISTER"]
        await agent.stop()

    asyncio.run(scenario())


def test_send_while_disconnected_is_dropped():
    async def scenario():
        agent, _, _ = _agent(FakeConnector())
        assert agent.send(object()) is False
        assert agent.request_start_capture(tab_id=1, title="Standup") is None
        assert agent.get_sessions() == {"sessions": [], "activeSessions": []}

    asyncio.run(scenario())


def test_start_requires_tab_id():
    agent, _, _ = _agent(FakeConnector())
    with pytest.raises(ValueError):
        agent.request_start_capture(tab_id="", title="x")


def test_end_to_end_capture_through_local_host():
    async def scenario():
        host = LocalTabHost()
        connector = FakeConnector([True])
        agent, _, notes = _agent(connector, host=host)
        doc, container = meeting_document()
        extractor = host.attach(7, doc, flush_interval=60.0)
        assert agent.known_meeting(7)["platform"] == "teams"

        await agent.start()
        session_id = agent.request_start_capture(7, "Design review", "teams")
        assert session_id is not None
        assert extractor.is_capturing
        assert agent.registry.get(session_id).state == SessionState.ACTIVE
        assert agent.get_sessions()["activeSessions"] == [session_id]

        for text in ["First point", "Second point", "Third point"]:
            container.append_child(caption_node(text, speaker="Lee"))
        await settle()

        agent.request_stop_capture(session_id)
        await agent.drain()

        socket = connector.sockets[0]
        assert socket.sent_types() == ["REGISTER", "CREATE_SESSION", "CAPTION_DATA", "END_SESSION"]
        create = socket.sent[1]
        assert create["sessionId"] == session_id
        assert create["tabId"] == 7
        batch = socket.sent[2]
        assert [c["text"] for c in batch["captions"]] == ["First point", "Second point", "Third point"]
        assert batch["captions"][0]["speaker"] == "Lee"
        assert isinstance(batch["timestamp"], int)

        session = agent.registry.get(session_id)
        assert session.caption_count == 3
        assert session.state == SessionState.ENDED
        assert agent.registry.active_ids() == frozenset()
        assert not extractor.is_capturing

        actions = [n.action for n in notes]
        assert actions.index("CAPTION_COUNT_UPDATE") < actions.index("CAPTURE_STOPPED")
        await agent.stop()

    asyncio.run(scenario())


def test_one_active_session_per_tab():
    async def scenario():
        host = LocalTabHost()
        agent, _, _ = _agent(FakeConnector([True]), host=host)
        doc, _ = meeting_document()
        host.attach(1, doc)
        await agent.start()
        first = agent.request_start_capture(1, "a")
        again = agent.request_start_capture(1, "b")
        assert again == first
        assert len(agent.registry) == 1
        await agent.stop()

    asyncio.run(scenario())


def test_stop_cleans_up_locally_when_disconnected():
    async def scenario():
        connector = FakeConnector([True], default=False)
        agent, _, _ = _agent(connector, MAX_RECONNECT_ATTEMPTS=0)
        await agent.start()
        a = agent.request_start_capture(1, "one")
        b = agent.request_start_capture(2, "two")
        assert agent.registry.active_ids() == {a, b}

        connector.sockets[0].drop()
        await settle()
        assert agent.state.phase == ConnectionPhase.EXHAUSTED

        agent.request_stop_capture(a, tab_id=1)
        assert agent.registry.active_ids() == {b}
        assert agent.get_sessions()["activeSessions"] == [b]

    asyncio.run(scenario())


def test_inbound_routing_and_malformed_payloads():
    async def scenario():
        connector = FakeConnector([True])
        agent, _, notes = _agent(connector)
        await agent.start()
        session_id = agent.request_start_capture(3, "Retro")
        socket = connector.sockets[0]

        socket.feed("{not json")
        socket.feed('{"type": "SOMETHING_NEW"}')
        socket.feed('{"type": "REGISTERED", "clientId": "client-1"}')
        socket.feed('{"type": "SESSION_CREATED", "sessionId": "%s", "session": {"id": "%s"}}' % (session_id, session_id))
        socket.feed('{"type": "CAPTURE_STATUS", "status": "recording"}')
        socket.feed('{"type": "ERROR", "error": "Session not found"}')
        socket.feed('{"type": "PONG"}')
        await settle()

        assert agent.is_connected
        assert agent.client_id == "client-1"
        assert agent.registry.get(session_id).state == SessionState.ACTIVE
        by_action = {n.action: n.payload for n in notes}
        assert by_action["REGISTERED"] == {"clientId": "client-1"}
        assert by_action["SESSION_CREATED"]["session"] == {"id": session_id}
        assert by_action["CAPTURE_STATUS"] == {"status": "recording"}
        assert by_action["ERROR"] == {"error": "Session not found"}
        await agent.stop()

    asyncio.run(scenario())


def test_ingest_while_disconnected_still_reports_count():
    agent, _, notes = _agent(FakeConnector())
    captions = [CaptionEvent(text="orphan line", platform="teams", session_id="s")]
    assert agent.ingest_caption_batch("s", captions) == 1
    assert notes[-1].action == "CAPTION_COUNT_UPDATE"


def test_unknown_local_message_is_ignored():
    agent, _, notes = _agent(FakeConnector())
    agent.handle_local({"action": "BOGUS"})
    agent.handle_local({"action": "CAPTURE_STOPPED", "sessionId": "s1", "platform": "teams"}, tab_id=4)
    assert [n.action for n in notes] == ["CAPTURE_STOPPED"]


def test_agents_are_independent():
    async def scenario():
        one, _, _ = _agent(FakeConnector([True]))
        two, _, _ = _agent(FakeConnector())
        await one.start()
        await two.start()
        assert one.is_connected
        assert not two.is_connected
        await one.stop()
        await two.stop()

    asyncio.run(scenario())


def test_keepalive_sends_ping_while_connected():
    async def scenario():
        connector = FakeConnector([True])
        agent, sleep, _ = _agent(connector, KEEPALIVE_SECONDS=15.0)
        await agent.start()
        await settle(10)
        assert "PING" in connector.sockets[0].sent_types()
        assert 15.0 in sleep.delays
        await agent.stop()

    asyncio.run(scenario())


def test_start_during_pending_retry_keeps_a_single_retry_chain():
    async def scenario():
        connector = FakeConnector(default=False)
        agent = TransportAgent(connector=connector, settings=Settings(RECONNECT_INTERVAL_SECONDS=30.0))
        await agent.start()
        assert agent.state.phase == ConnectionPhase.RECONNECTING

        await agent.start()
        await settle()

        pending = [
            t
            for t in asyncio.all_tasks()
            if not t.done() and t.get_coro().__qualname__.endswith("_reconnect_after_delay")
        ]
        assert len(pending) == 1
        assert connector.calls == 2
        assert agent.state.reconnect_attempts == 2
        await agent.stop()
        await settle()
        assert all(t.done() for t in pending)

    asyncio.run(scenario())
