from __future__ import annotations

import dataclasses
import logging

import pytest

from sipwss.exceptions import SIPTimeout, TransportError
from sipwss.sip import (
    RegistrationOutcome,
    RegistrationSession,
    RegistrationState,
    run_registration,
)
from sipwss.websocket import Opcode

from .conftest import (
    FakeConnection,
    MockWebSocketServer,
    RecordingRegistrationListener,
    server_frame,
    sip_response,
)


_logger = logging.getLogger(__name__)


@pytest.fixture()
def listener():
    return RecordingRegistrationListener()


@pytest.fixture()
def session(config, listener, connection_factory):
    """A session with a fake connection attached, driven without its event loop."""
    session = RegistrationSession(config, listener, connection_factory=connection_factory)
    session._connection = FakeConnection(config, session)
    return session


class TestTransaction:
    def test_open_sends_register_and_starts_keepalive(self, session, config):
        """Test that opening the socket sends the REGISTER and starts the keepalive."""
        session.on_open()
        assert session.state == RegistrationState.OPEN
        assert session.connection.sent == [session.register_request]
        assert session.connection.keepalive_intervals == [config.keepalive_interval]

    def test_registered(self, session, listener):
        """Test that a matching 200 response registers and keeps the connection open."""
        session.on_open()
        session.on_message(sip_response("200 OK", request=session.register_request))
        assert session.state == RegistrationState.REGISTERED
        (outcome,) = listener.outcomes
        assert outcome.success
        assert (outcome.status_code, outcome.reason) == (200, "OK")
        assert outcome.response.call_id == session.builder.call_id
        assert outcome.error is None
        assert not session.connection.closed, "Connection should be kept after registering"
        assert session.wait(0) is outcome

    def test_registered_empty_reason(self, session, listener):
        """Test that a 200 response without reason phrase reports "OK"."""
        session.on_message("SIP/2.0 200\r\nCSeq: 1 REGISTER\r\n\r\n")
        (outcome,) = listener.outcomes
        assert outcome.reason == "OK"

    def test_rejected(self, session, listener):
        """Test that a non-200 final response fails and closes the connection."""
        session.on_message(sip_response("401 Unauthorized"))
        assert session.state == RegistrationState.FAILED
        (outcome,) = listener.outcomes
        assert outcome.status_code == 401
        assert outcome.reason == "REGISTER failed: 401 Unauthorized"
        assert "401" in str(outcome)
        assert session.connection.closed

    def test_missing_status_code(self, session, listener):
        """Test that a REGISTER response with a malformed status line fails."""
        session.on_message("SIP/2.0 abc\r\nCSeq: 1 REGISTER\r\n\r\n")
        (outcome,) = listener.outcomes
        assert outcome.state == RegistrationState.FAILED
        assert outcome.reason == "REGISTER response missing status code"

    @pytest.mark.parametrize("text", ["", "  \r\n  "])
    def test_parse_failure(self, session, listener, text):
        """Test that an empty or blank SIP message fails the registration."""
        session.on_message(text)
        (outcome,) = listener.outcomes
        assert outcome.reason == "SIP parse failed (empty/invalid)"

    @pytest.mark.parametrize(
        "text",
        [
            sip_response("200 OK", cseq="2 REGISTER"),
            sip_response("200 OK", cseq="1 OPTIONS"),
            "OPTIONS sip:1000@example.com SIP/2.0\r\nCSeq: 1 REGISTER\r\n\r\n",
            "SIP/2.0 200 OK\r\n\r\n",
        ],
    )
    def test_non_matching_ignored(self, session, listener, text):
        """Test that messages outside the REGISTER transaction are logged and ignored."""
        session.on_message(text)
        assert listener.outcomes == []
        assert session.state == RegistrationState.IDLE
        assert session.response_observed
        assert any("Ignoring non-REGISTER" in log for log in listener.logs)

    def test_case_insensitive_method(self, session, listener):
        """Test that the CSeq method is matched case-insensitively."""
        session.on_message(sip_response("200 OK", cseq="1 register"))
        assert listener.outcomes[0].success

    def test_provisional_then_final(self, session, listener):
        """Test that a final response after an unrelated message concludes the transaction."""
        session.on_message(sip_response("200 OK", cseq="1 OPTIONS"))
        session.on_message(sip_response("403 Forbidden"))
        (outcome,) = listener.outcomes
        assert outcome.status_code == 403


class TestTerminality:
    def test_single_outcome(self, session, listener):
        """Test that only the first terminal outcome is reported."""
        session.on_message(sip_response("200 OK"))
        session.on_message(sip_response("500 Server Error"))
        session.on_error(TransportError("late"))
        session.on_close(1000, None)
        session._on_timeout()
        assert len(listener.outcomes) == 1
        assert session.state == RegistrationState.REGISTERED
        assert listener.states.count(RegistrationState.REGISTERED) == 1

    def test_close_before_response(self, session, listener):
        """Test that a close before any SIP message fails the registration."""
        session.on_open()
        session.on_close(None, "socket closed")
        (outcome,) = listener.outcomes
        assert outcome.reason == "socket closed before SIP response"

    def test_close_after_outcome_is_informational(self, session, listener):
        """Test that a close after the outcome is only logged."""
        session.on_message(sip_response("200 OK"))
        session.on_close(1000, "bye")
        assert len(listener.outcomes) == 1
        assert any("code=1000" in log for log in listener.logs)

    def test_close_after_unrelated_message(self, session, listener):
        """Test that a close after only unrelated SIP messages still fails the registration."""
        session.on_message(sip_response("200 OK", cseq="1 OPTIONS"))
        session.on_close(None, "socket closed")
        (outcome,) = listener.outcomes
        assert outcome.reason == "socket closed before REGISTER response"

    def test_error(self, session, listener):
        """Test that a transport error fails the registration with its description."""
        session.on_error(TransportError("connection reset"))
        (outcome,) = listener.outcomes
        assert outcome.state == RegistrationState.FAILED
        assert outcome.reason == "socket error: connection reset"

    def test_timeout_without_response(self, session, listener, config):
        """Test that the register timeout ends the session and closes the connection."""
        session._on_timeout()
        (outcome,) = listener.outcomes
        assert outcome.state == RegistrationState.TIMEOUT
        assert outcome.reason == f"no SIP response in {config.register_timeout:g} seconds"
        assert isinstance(outcome.error, SIPTimeout)
        assert str(outcome.error) == outcome.reason
        assert session.connection.closed

    def test_timeout_after_response_is_noop(self, session, listener):
        """Test that the register timeout does nothing once a SIP message was received."""
        session.on_message(sip_response("200 OK", cseq="1 OPTIONS"))
        session._on_timeout()
        assert listener.outcomes == []

    def test_stopped_session_ignores_events(self, session, listener):
        """Test that transport events after stop are ignored."""
        session.stop()
        session.on_open()
        session.on_message(sip_response("200 OK"))
        session.on_error(TransportError("late"))
        assert listener.outcomes == []
        assert session.connection.sent == []

    def test_logs_every_event(self, session, listener):
        """Test that the listener receives log lines for the main session events."""
        session.on_open()
        session.on_message(sip_response("200 OK"))
        assert any("sending REGISTER" in log for log in listener.logs)
        assert any(session.register_request in log for log in listener.logs)
        assert any(log.startswith("REGISTERED: 200 OK") for log in listener.logs)


class TestLifecycle:
    def test_registration_flow(self, config, listener, connection_factory):
        """Test a full registration through the session event loop thread."""
        with RegistrationSession(config, listener, connection_factory=connection_factory) as session:
            connection = connection_factory.connection
            session.event_loop.call_soon_threadsafe(session.on_open)
            session.event_loop.call_soon_threadsafe(
                session.on_message, sip_response("200 OK", request=session.register_request)
            )
            outcome = session.wait(2.0)

        assert outcome is not None
        assert outcome.success
        assert connection.connected
        assert connection.sent == [session.register_request]
        assert connection.closed, "Stopping the session should close the connection"
        assert listener.states == [
            RegistrationState.CONNECTING,
            RegistrationState.OPEN,
            RegistrationState.REGISTERED,
        ]

    def test_timeout(self, config, listener, connection_factory):
        """Test that the register timeout fires on the event loop and reports a timeout."""
        config = dataclasses.replace(config, register_timeout=0.1)
        session = RegistrationSession(config, listener, connection_factory=connection_factory)
        session.start()
        try:
            outcome = session.wait(2.0)
        finally:
            session.stop()
        assert outcome.state == RegistrationState.TIMEOUT
        assert outcome.reason == "no SIP response in 0.1 seconds"
        assert connection_factory.connection.closed

    def test_response_suppresses_timeout(self, config, listener, connection_factory):
        """Test that an unrelated SIP message disarms the register timeout."""
        config = dataclasses.replace(config, register_timeout=0.1)
        with RegistrationSession(config, listener, connection_factory=connection_factory) as session:
            connection_factory.connection  # noqa: B018
            session.event_loop.call_soon_threadsafe(
                session.on_message, sip_response("200 OK", cseq="1 OPTIONS")
            )
            assert session.wait(0.4) is None
        assert listener.outcomes == []

    def test_stop_reports_nothing(self, config, listener, connection_factory):
        """Test that stopping before an outcome reports nothing and stops the loop."""
        session = RegistrationSession(config, listener, connection_factory=connection_factory)
        session.start()
        connection_factory.connection  # noqa: B018
        session.stop()
        assert session.wait(0.1) is None
        assert listener.outcomes == []
        assert not session.event_loop.is_running()

    def test_start_twice(self, config, connection_factory):
        """Test that a session cannot be started twice."""
        session = RegistrationSession(config, connection_factory=connection_factory)
        session.start()
        try:
            with pytest.raises(RuntimeError):
                session.start()
        finally:
            session.stop()

    def test_stop_without_start(self, config):
        """Test that stopping a never started session is harmless."""
        session = RegistrationSession(config)
        session.stop()
        assert session.state == RegistrationState.IDLE

    def test_run_registration_timeout(self, config, listener, connection_factory):
        """Test that run_registration reports a timeout when nothing answers."""
        config = dataclasses.replace(config, register_timeout=0.1)
        outcome = run_registration(config, listener, grace=1.0, connection_factory=connection_factory)
        assert isinstance(outcome, RegistrationOutcome)
        assert outcome.state == RegistrationState.TIMEOUT
        assert isinstance(outcome.error, TimeoutError)


class TestMockServer:
    """End-to-end tests against a local WebSocket server over plain TCP."""

    @staticmethod
    def _config(config, server, **kwargs):
        return dataclasses.replace(config, ws_url=server.ws_url, **kwargs)

    def test_registered(self, config, listener):
        """Test a successful registration against a local WebSocket server."""
        with MockWebSocketServer(lambda text: [_text_frame(sip_response("200 OK", request=text))]) as server:
            outcome = run_registration(self._config(config, server), listener)
            assert server.received_messages[0].startswith("REGISTER sip:example.com SIP/2.0\r\n")

        assert outcome.success, str(outcome)
        assert (outcome.status_code, outcome.reason) == (200, "OK")
        request = server.upgrade_request.decode("utf-8")
        assert request.startswith("GET /ws HTTP/1.1\r\n")
        assert f"Host: 127.0.0.1:{server.port}\r\n" in request

    def test_port_kept_after_stop(self):
        """Test that the server port stays readable once the server is stopped."""
        with MockWebSocketServer() as server:
            port = server.port
        assert server.port == port
        assert server.ws_url == f"ws://127.0.0.1:{port}/ws"

    def test_rejected(self, config, listener):
        """Test that a rejected REGISTER from the server fails the registration."""
        with MockWebSocketServer(lambda text: [_text_frame(sip_response("401 Unauthorized", request=text))]) as server:
            outcome = run_registration(self._config(config, server), listener)
        assert outcome.state == RegistrationState.FAILED
        assert outcome.status_code == 401

    def test_no_response(self, config, listener):
        """Test that a server that never answers leads to a timeout."""
        with MockWebSocketServer() as server:
            outcome = run_registration(self._config(config, server, register_timeout=0.3), listener)
        assert outcome.state == RegistrationState.TIMEOUT

    def test_closed_before_response(self, config, listener):
        """Test that a server closing right after the REGISTER fails the registration."""
        with MockWebSocketServer(close_after_request=True) as server:
            outcome = run_registration(self._config(config, server), listener)
        assert outcome.state == RegistrationState.FAILED
        assert outcome.reason == "socket closed before SIP response"

    def test_handshake_rejected(self, config, listener):
        """Test that a refused WebSocket upgrade fails with the HTTP status."""
        with MockWebSocketServer(handshake=False) as server:
            outcome = run_registration(self._config(config, server), listener)
        assert outcome.state == RegistrationState.FAILED
        assert outcome.reason.startswith("socket error: Handshake failed: HTTP/1.1 403")


@pytest.mark.needs_test_server()
class TestRealServer:
    def test_register(self, test_server_config):
        """Test a registration against a real SIP WebSocket gateway."""
        outcome = run_registration(test_server_config)
        _logger.info(f"Registration outcome: {outcome}")
        assert outcome.state != RegistrationState.TIMEOUT, "Gateway should answer the REGISTER"


def _text_frame(text):
    return server_frame(Opcode.TEXT, text.encode("utf-8"))
