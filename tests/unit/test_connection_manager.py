"""Unit tests for ConnectionManager.

These tests verify the core functionality of the ConnectionManager class:
- Connect/disconnect lifecycle and status updates
- Data and text delivery in arrival order
- Send contract (NotConnectedError, write failures)
- Reconnection with linear backoff and the attempt limit
- Invalid endpoints and connect timeouts
- Metrics tracking
"""

import asyncio

import pytest
from unittest.mock import Mock
from esp_audio_stream.config import ConnectionConfig
from esp_audio_stream.connection_manager import (
    ConnectionManager,
    ConnectionState,
    format_status,
)
from esp_audio_stream.errors import (
    InvalidURLOrEndpointError,
    NotConnectedError,
    TransportError,
)


def make_config(**overrides):
    settings = dict(
        host="192.168.4.1",
        connect_timeout=1.0,
        reconnect_base_delay=0.01,
        max_reconnect_attempts=5,
    )
    settings.update(overrides)
    return ConnectionConfig(**settings)


def record_statuses(manager):
    texts = []
    manager.status_changed.subscribe(lambda update: texts.append(update.text))
    return texts


class TestConnectionManagerInitialization:
    """Test ConnectionManager initialization."""

    def test_initial_state(self, transport_factory):
        """Test a new manager is disconnected and idle."""
        manager = ConnectionManager(make_config(), transport_factory)

        assert manager.state is ConnectionState.DISCONNECTED
        assert manager.reconnect_attempt == 0
        assert manager.is_connected is False
        assert manager.status_text == "disconnected"
        assert transport_factory.created == []

    def test_format_status(self):
        """Test status texts."""
        assert format_status(ConnectionState.CONNECTING, 0, 5) == "connecting"
        assert format_status(ConnectionState.RECONNECTING, 2, 5) == "reconnecting (2/5)"
        assert format_status(ConnectionState.FAILED, 5, 5) == "failed"


class TestConnectionManagerLifecycle:
    """Test connect/disconnect."""

    @pytest.mark.asyncio
    async def test_connect(self, transport_factory, until):
        """Test connecting publishes connecting then connected."""
        manager = ConnectionManager(make_config(), transport_factory)
        texts = record_statuses(manager)

        await manager.connect()
        assert manager.state is ConnectionState.CONNECTING

        assert await manager.wait_until_connected(timeout=1.0)
        assert manager.is_connected
        assert texts == ["connecting", "connected"]
        assert transport_factory.last.opened

        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_connect_is_noop_when_connected(self, transport_factory):
        """Test a second connect() does not open another socket."""
        manager = ConnectionManager(make_config(), transport_factory)
        await manager.connect()
        await manager.wait_until_connected(timeout=1.0)

        await manager.connect()
        await asyncio.sleep(0.02)

        assert len(transport_factory.created) == 1
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect(self, transport_factory, until):
        """Test manual disconnect closes the socket without reconnecting."""
        manager = ConnectionManager(make_config(), transport_factory)
        texts = record_statuses(manager)
        await manager.connect()
        await manager.wait_until_connected(timeout=1.0)

        await manager.disconnect()
        await asyncio.sleep(0.05)

        assert manager.state is ConnectionState.DISCONNECTED
        assert transport_factory.last.closed
        assert len(transport_factory.created) == 1
        assert texts[-1] == "disconnected"

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, transport_factory):
        """Test disconnecting twice publishes one update."""
        manager = ConnectionManager(make_config(), transport_factory)
        await manager.connect()
        await manager.wait_until_connected(timeout=1.0)
        texts = record_statuses(manager)

        await manager.disconnect()
        await manager.disconnect()

        assert texts == ["disconnected"]

    @pytest.mark.asyncio
    async def test_disconnect_when_never_connected(self, transport_factory):
        """Test disconnect on a fresh manager is harmless."""
        manager = ConnectionManager(make_config(), transport_factory)

        await manager.disconnect()

        assert manager.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_wait_until_connected_timeout(self, transport_factory):
        """Test waiting gives up when the open hangs."""
        transport_factory.add(open_delay=5.0)
        manager = ConnectionManager(make_config(), transport_factory)
        await manager.connect()

        assert await manager.wait_until_connected(timeout=0.05) is False

        await manager.disconnect()


class TestConnectionManagerData:
    """Test inbound delivery."""

    @pytest.mark.asyncio
    async def test_data_delivered_in_order(self, transport_factory, until):
        """Test binary chunks reach data_received in arrival order."""
        manager = ConnectionManager(make_config(), transport_factory)
        chunks = []
        manager.data_received.subscribe(chunks.append)
        await manager.connect()
        await manager.wait_until_connected(timeout=1.0)

        transport_factory.last.push(b"\x01\x00", b"\x02\x00", b"\x03\x00")
        await until(lambda: len(chunks) == 3)

        assert chunks == [b"\x01\x00", b"\x02\x00", b"\x03\x00"]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_text_frames(self, transport_factory, until):
        """Test text messages go to text_received, not data_received."""
        manager = ConnectionManager(make_config(), transport_factory)
        texts = []
        data = Mock()
        manager.text_received.subscribe(texts.append)
        manager.data_received.subscribe(data)
        await manager.connect()
        await manager.wait_until_connected(timeout=1.0)

        transport_factory.last.push("RECORDING")
        await until(lambda: texts == ["RECORDING"])

        data.assert_not_called()
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_empty_chunks_skipped(self, transport_factory, until):
        """Test empty binary messages are not delivered."""
        manager = ConnectionManager(make_config(), transport_factory)
        chunks = []
        manager.data_received.subscribe(chunks.append)
        await manager.connect()
        await manager.wait_until_connected(timeout=1.0)

        transport_factory.last.push(b"", b"\x05\x00")
        await until(lambda: len(chunks) == 1)

        assert chunks == [b"\x05\x00"]
        await manager.disconnect()


class TestConnectionManagerSend:
    """Test the send contract."""

    @pytest.mark.asyncio
    async def test_send_requires_connection(self, transport_factory):
        """Test sending while disconnected raises."""
        manager = ConnectionManager(make_config(), transport_factory)

        with pytest.raises(NotConnectedError):
            await manager.send(b"\x00")
        with pytest.raises(NotConnectedError):
            await manager.send_command("START")

    @pytest.mark.asyncio
    async def test_send_and_command(self, transport_factory):
        """Test data and commands reach the transport."""
        manager = ConnectionManager(make_config(), transport_factory)
        await manager.connect()
        await manager.wait_until_connected(timeout=1.0)

        await manager.send(b"\x01\x02")
        await manager.send_command("START")

        assert transport_factory.last.sent == [b"\x01\x02"]
        assert transport_factory.last.commands == ["START"]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_send_failure_reported_without_state_change(self, transport_factory):
        """Test a write failure is emitted on errors and the state stays CONNECTED."""
        transport_factory.add(send_error=TransportError("broken pipe"))
        manager = ConnectionManager(make_config(), transport_factory)
        errors = []
        manager.errors.subscribe(errors.append)
        await manager.connect()
        await manager.wait_until_connected(timeout=1.0)

        await manager.send_command("STOP")

        assert manager.state is ConnectionState.CONNECTED
        assert len(errors) == 1
        assert isinstance(errors[0], TransportError)
        assert manager.get_metrics()["send_errors"] == 1
        await manager.disconnect()


class TestConnectionManagerReconnection:
    """Test recovery after failures."""

    @pytest.mark.asyncio
    async def test_reconnects_after_drop(self, transport_factory, until):
        """Test a dropped link goes through reconnecting back to connected."""
        manager = ConnectionManager(make_config(), transport_factory)
        texts = record_statuses(manager)
        errors = []
        manager.errors.subscribe(errors.append)
        await manager.connect()
        await manager.wait_until_connected(timeout=1.0)
        first = transport_factory.last

        first.drop()
        await until(lambda: len(transport_factory.created) == 2 and manager.is_connected)

        assert first.closed
        assert texts == ["connecting", "connected", "reconnecting (1/5)", "connecting", "connected"]
        assert manager.reconnect_attempt == 0
        assert len(errors) == 1
        assert manager.get_metrics()["connections_opened"] == 2
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, transport_factory, until):
        """Test five consecutive failures end in FAILED after five opens."""
        transport_factory.always_fail(TransportError("host unreachable"))
        manager = ConnectionManager(make_config(max_reconnect_attempts=5), transport_factory)
        texts = record_statuses(manager)

        await manager.connect()
        await until(lambda: manager.state is ConnectionState.FAILED)

        assert len(transport_factory.created) == 5
        assert texts == [
            "connecting",
            "reconnecting (1/5)", "connecting",
            "reconnecting (2/5)", "connecting",
            "reconnecting (3/5)", "connecting",
            "reconnecting (4/5)", "connecting",
            "failed",
        ]
        assert manager.reconnect_attempt == 5

        await asyncio.sleep(0.05)
        assert len(transport_factory.created) == 5

    @pytest.mark.asyncio
    async def test_attempt_numbers_strictly_increase(self, transport_factory, until):
        """Test reconnecting updates carry increasing attempt numbers."""
        transport_factory.always_fail(TransportError("host unreachable"))
        manager = ConnectionManager(make_config(max_reconnect_attempts=4), transport_factory)
        attempts = []
        manager.status_changed.subscribe(
            lambda update: attempts.append(update.attempt)
            if update.state is ConnectionState.RECONNECTING else None
        )

        await manager.connect()
        await until(lambda: manager.state is ConnectionState.FAILED)

        assert attempts == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_linear_backoff(self, transport_factory, until):
        """Test waits grow as base * n."""
        transport_factory.always_fail(TransportError("host unreachable"))
        manager = ConnectionManager(
            make_config(reconnect_base_delay=0.05, max_reconnect_attempts=3),
            transport_factory,
        )
        loop = asyncio.get_running_loop()

        started = loop.time()
        await manager.connect()
        await until(lambda: manager.state is ConnectionState.FAILED)

        # 0.05 * 1 + 0.05 * 2
        assert loop.time() - started >= 0.14

    @pytest.mark.asyncio
    async def test_zero_attempts_fails_immediately(self, transport_factory, until):
        """Test max_reconnect_attempts=0 fails on the first loss."""
        transport_factory.always_fail(TransportError("host unreachable"))
        manager = ConnectionManager(make_config(max_reconnect_attempts=0), transport_factory)
        texts = record_statuses(manager)

        await manager.connect()
        await until(lambda: manager.state is ConnectionState.FAILED)

        assert texts == ["connecting", "failed"]
        assert len(transport_factory.created) == 1

    @pytest.mark.asyncio
    async def test_successful_open_resets_attempts(self, transport_factory, until):
        """Test the counter restarts after a good connection."""
        transport_factory.add(open_error=TransportError("refused"))
        transport_factory.add(open_error=TransportError("refused"))
        manager = ConnectionManager(make_config(max_reconnect_attempts=3), transport_factory)
        texts = record_statuses(manager)

        await manager.connect()
        await until(lambda: manager.is_connected)
        assert manager.reconnect_attempt == 0

        transport_factory.last.drop()
        await until(lambda: len(transport_factory.created) == 4 and manager.is_connected)

        assert "reconnecting (1/3)" in texts[-3:]
        assert manager.state is ConnectionState.CONNECTED
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_connect_timeout_counts_as_failure(self, transport_factory, until):
        """Test an open exceeding connect_timeout is treated as a failed attempt."""
        transport_factory.add(open_delay=5.0)
        manager = ConnectionManager(
            make_config(connect_timeout=0.05, max_reconnect_attempts=1), transport_factory
        )
        errors = []
        manager.errors.subscribe(errors.append)

        await manager.connect()
        await until(lambda: manager.state is ConnectionState.FAILED)

        assert isinstance(errors[0], TransportError)
        assert "timed out" in str(errors[0])
        assert transport_factory.created[0].closed

    @pytest.mark.asyncio
    async def test_invalid_endpoint_fails_without_retry(self, transport_factory, until):
        """Test an invalid endpoint goes straight to FAILED."""
        transport_factory.add(open_error=InvalidURLOrEndpointError("bad url"))
        manager = ConnectionManager(make_config(), transport_factory)
        texts = record_statuses(manager)

        await manager.connect()
        await until(lambda: manager.state is ConnectionState.FAILED)
        await asyncio.sleep(0.05)

        assert texts == ["connecting", "failed"]
        assert len(transport_factory.created) == 1

    @pytest.mark.asyncio
    async def test_connect_after_failed(self, transport_factory, until):
        """Test an explicit connect() recovers from FAILED."""
        transport_factory.add(open_error=TransportError("refused"))
        manager = ConnectionManager(make_config(max_reconnect_attempts=1), transport_factory)

        await manager.connect()
        await until(lambda: manager.state is ConnectionState.FAILED)

        await manager.connect()
        assert manager.reconnect_attempt == 0
        assert await manager.wait_until_connected(timeout=1.0)
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_during_backoff(self, transport_factory, until):
        """Test a manual disconnect cancels a pending reconnection."""
        transport_factory.always_fail(TransportError("refused"))
        manager = ConnectionManager(make_config(reconnect_base_delay=1.0), transport_factory)

        await manager.connect()
        await until(lambda: manager.state is ConnectionState.RECONNECTING)
        await manager.disconnect()
        await asyncio.sleep(0.05)

        assert manager.state is ConnectionState.DISCONNECTED
        assert len(transport_factory.created) == 1


class TestConnectionManagerMetrics:
    """Test metrics tracking."""

    @pytest.mark.asyncio
    async def test_get_metrics(self, transport_factory, until):
        """Test counters after receiving data."""
        manager = ConnectionManager(make_config(), transport_factory)
        await manager.connect()
        await manager.wait_until_connected(timeout=1.0)

        transport_factory.last.push(b"\x00" * 10, b"\x00" * 6, "hello")
        await until(lambda: manager.get_metrics()["texts_received"] == 1)

        metrics = manager.get_metrics()
        assert metrics["state"] == "connected"
        assert metrics["status"] == "connected"
        assert metrics["attempt"] == 0
        assert metrics["connections_opened"] == 1
        assert metrics["chunks_received"] == 2
        assert metrics["bytes_received"] == 16
        assert metrics["send_errors"] == 0
        await manager.disconnect()
