"""
Tests for the runtime wiring: chat client startup, fallback mode, event
dispatch and reinitialization after logout.
"""

import asyncio

import pytest

from group_monitor.client import ClientUnavailableError, SimulatedChatClient, load_client_factory
from group_monitor.config import Settings
from group_monitor.connection import ConnectionPhase
from group_monitor.events import InboundMessage, PairingRequired, RawInboundEvent
from group_monitor.runtime import MonitorRuntime


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATA_DIR=str(tmp_path / "data"),
        CLIENT_FACTORY="",
        CLIENT_INIT_DELAY_SECONDS=0,
        REINIT_DELAY_SECONDS=0.01,
    )


class RecordingFactory:
    def __init__(self, **client_kwargs):
        self.client_kwargs = client_kwargs
        self.clients = []

    def __call__(self, channel):
        client = SimulatedChatClient(channel, **self.client_kwargs)
        self.clients.append(client)
        return client


class TestStartup:
    """Test chat client startup."""

    @pytest.mark.asyncio
    async def test_no_client_configured_engages_fallback(self, settings):
        runtime = MonitorRuntime(settings)
        await runtime.start()
        status = runtime.controller.get_status()
        errors = runtime.storage.get_recent_errors(10)
        await runtime.stop()

        assert status.phase is ConnectionPhase.CONNECTED
        assert status.fallback is True
        assert status.pairing_payload is None
        assert errors[0].context == "client_initialization"

    @pytest.mark.asyncio
    async def test_simulated_client_connects(self, settings):
        factory = RecordingFactory()
        runtime = MonitorRuntime(settings, client_factory=factory)

        await runtime.start()
        await runtime.process_pending()
        status = runtime.controller.get_status()
        await runtime.stop()

        assert status.phase is ConnectionPhase.CONNECTED
        assert status.fallback is False
        assert factory.clients[0].destroyed is True

    @pytest.mark.asyncio
    async def test_pairing_payload_exposed_while_waiting(self, settings):
        factory = RecordingFactory(script=[])
        runtime = MonitorRuntime(settings, client_factory=factory)

        await runtime.start()
        await factory.clients[0].channel.publish(PairingRequired(payload="code-1"))
        await runtime.process_pending()
        status = runtime.controller.get_status()
        await runtime.stop()

        assert status.phase is ConnectionPhase.AWAITING_PAIRING
        assert status.pairing_payload == "code-1"

    @pytest.mark.asyncio
    async def test_initialize_failure_falls_back(self, settings):
        factory = RecordingFactory(fail_initialize=True)
        runtime = MonitorRuntime(settings, client_factory=factory)

        await runtime.start()
        status = runtime.controller.get_status()
        await runtime.stop()

        assert status.phase is ConnectionPhase.CONNECTED
        assert status.fallback is True
        assert "failed to initialize" in status.last_error

    @pytest.mark.asyncio
    async def test_message_count_reconciled_from_storage(self, settings):
        first = MonitorRuntime(settings)
        await first.start()
        first.pipeline.ingest_manual("one")
        first.pipeline.ingest_manual("two")
        await first.stop()

        second = MonitorRuntime(settings)
        await second.start()
        count = second.controller.get_status().message_count
        await second.stop()

        assert count == 2


class TestDispatch:
    """Test routing of channel events."""

    @pytest.mark.asyncio
    async def test_inbound_message_ingested(self, settings):
        runtime = MonitorRuntime(settings)
        await runtime.start()

        await runtime.channel.publish(InboundMessage(raw=RawInboundEvent(
            conversation_id="G1",
            source_message_id="m1",
            body="hi",
            author_name="Alice",
            conversation_name="G1",
        )))
        handled = await runtime.process_pending()
        messages = runtime.storage.get_messages(10)
        await runtime.stop()

        assert handled == 1
        assert len(messages) == 1
        assert messages[0].author == "Alice"

    @pytest.mark.asyncio
    async def test_dispatcher_task_consumes_channel(self, settings):
        runtime = MonitorRuntime(settings)
        await runtime.start()

        await runtime.channel.publish(InboundMessage(raw=RawInboundEvent(conversation_id="G1", source_message_id="m1")))
        await asyncio.wait_for(runtime.channel.join(), timeout=1)
        messages = runtime.storage.get_messages(10)
        await runtime.stop()

        assert len(messages) == 1

    @pytest.mark.asyncio
    async def test_client_emitted_message_normalized_and_stored(self, settings):
        factory = RecordingFactory()
        runtime = MonitorRuntime(settings, client_factory=factory)
        await runtime.start()
        await runtime.process_pending()

        await factory.clients[0].emit_message(
            {"id": {"_serialized": "false_G7@g.us_ABC"}, "body": "from the platform", "timestamp": 1736935200},
            chat={"id": {"_serialized": "G7@g.us"}, "name": "Family", "isGroup": True},
            contact={"pushname": "Alice"},
        )
        handled = await runtime.process_pending()
        messages = runtime.storage.get_messages(10)
        await runtime.stop()

        assert handled == 1
        assert len(messages) == 1
        assert messages[0].source_message_id == "false_G7@g.us_ABC"
        assert messages[0].group_id == "G7@g.us"
        assert messages[0].group_name == "Family"
        assert messages[0].author == "Alice"

    @pytest.mark.asyncio
    async def test_dispatch_failure_logged(self, settings, monkeypatch):
        runtime = MonitorRuntime(settings)
        await runtime.start()

        def broken_ingest(raw):
            raise RuntimeError("pipeline bug")

        monkeypatch.setattr(runtime.pipeline, "ingest", broken_ingest)
        await runtime.dispatch(InboundMessage(raw=RawInboundEvent(conversation_id="G1")))
        errors = runtime.storage.get_recent_errors(1)
        await runtime.stop()

        assert errors[0].message == "pipeline bug"
        assert errors[0].context == "message_handler"


class TestLogoutReinitialization:
    """Test logout followed by one fresh client start."""

    @pytest.mark.asyncio
    async def test_logout_then_reinitialize(self, settings):
        factory = RecordingFactory()
        runtime = MonitorRuntime(settings, client_factory=factory)
        await runtime.start()
        await runtime.process_pending()

        await runtime.controller.logout()
        phase_after_logout = runtime.controller.phase
        await runtime.controller.reinit_task
        await runtime.process_pending()
        final_phase = runtime.controller.phase
        await runtime.stop()

        assert phase_after_logout is ConnectionPhase.DISCONNECTED
        assert final_phase is ConnectionPhase.CONNECTED
        assert len(factory.clients) == 2
        assert factory.clients[0].logout_calls == 1
        assert factory.clients[0].destroyed is True

    @pytest.mark.asyncio
    async def test_logout_failure_still_disconnects(self, settings):
        factory = RecordingFactory(fail_logout=True)
        runtime = MonitorRuntime(settings, client_factory=factory)
        await runtime.start()
        await runtime.process_pending()

        await runtime.controller.logout()
        phase = runtime.controller.phase
        await runtime.stop()

        assert phase is ConnectionPhase.DISCONNECTED

    @pytest.mark.asyncio
    async def test_reinitialize_failure_stays_failed(self, settings):
        factory = RecordingFactory()
        runtime = MonitorRuntime(settings, client_factory=factory)
        await runtime.start()
        await runtime.process_pending()

        factory.client_kwargs["fail_initialize"] = True
        await runtime.controller.logout()
        await runtime.controller.reinit_task
        status = runtime.controller.get_status()
        await runtime.stop()

        assert status.phase is ConnectionPhase.FAILED
        assert status.fallback is False


class TestClientFactoryLoading:
    """Test resolving CLIENT_FACTORY."""

    def test_empty_path(self):
        with pytest.raises(ClientUnavailableError):
            load_client_factory("")

    def test_missing_module(self):
        with pytest.raises(ClientUnavailableError):
            load_client_factory("no_such_transport_module:build")

    def test_malformed_path(self):
        with pytest.raises(ClientUnavailableError):
            load_client_factory("group_monitor.client")

    def test_simulated_factory(self):
        factory = load_client_factory("group_monitor.client:simulated_client_factory")
        assert callable(factory)
