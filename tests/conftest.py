from __future__ import annotations

import asyncio
import logging
import socket
import threading
import uuid
from typing import TYPE_CHECKING, Callable, Sequence

import pytest

from sipwss import RegistrationConfig
from sipwss.websocket import Frame, Opcode, compute_accept_key


if TYPE_CHECKING:
    from types import TracebackType


_logger = logging.getLogger(__name__)


TEST_INSTANCE_ID = uuid.UUID("6f1c1d6e-8a4b-4b7e-9c51-0d4b5e0a9f21")


def pytest_addoption(parser):
    parser.addoption("--test-ws-url", help="WebSocket URL of the test SIP gateway")
    parser.addoption("--test-domain", help="SIP domain to register to on the gateway")
    parser.addoption("--test-agent-id", help="Agent id to register on the gateway")


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "needs_test_server: mark test as needing a test server"
    )


def get_test_server_options(config):
    options = dict(
        ws_url=config.getoption("--test-ws-url"),
        domain=config.getoption("--test-domain"),
        agent_id=config.getoption("--test-agent-id"),
    )
    if not any(options.values()):
        raise ValueError(
            "need --test-ws-url command line options to run with a real server"
        )
    if not all(options.values()):
        raise ValueError(
            "need ALL these command line options to run with a real server: "
            "--test-ws-url, --test-domain, --test-agent-id"
        )
    return options


def pytest_collection_modifyitems(config, items):
    enable_real_server_tests = False
    skip_real_server_tests_reason = "need --test-ws-url command line options to run"
    try:
        get_test_server_options(config)
        enable_real_server_tests = True
    except ValueError as e:
        skip_real_server_tests_reason = str(e)

    skip_needs_test_server = pytest.mark.skip(reason=skip_real_server_tests_reason)
    for item in items:
        if "needs_test_server" in item.keywords and not enable_real_server_tests:
            item.add_marker(skip_needs_test_server)


@pytest.fixture(scope="session")
def test_server_config(pytestconfig):
    return RegistrationConfig(
        user_agent="sipwss-test", **get_test_server_options(pytestconfig)
    )


@pytest.fixture()
def config():
    return RegistrationConfig(
        ws_url="wss://gateway.example.com/ws",
        domain="example.com",
        agent_id="1000",
        user_agent="sipwss-test",
        instance_id=TEST_INSTANCE_ID,
        register_timeout=5.0,
    )


def server_frame(opcode: Opcode, payload: bytes = b"", fin: bool = True) -> bytes:
    """Encode an unmasked frame, as sent by servers."""
    return Frame(opcode=opcode, payload=payload, fin=fin).serialize()


def decode_client_frames(data: bytes) -> list[Frame]:
    """Decode all the (masked) frames written by a client."""
    frames: list[Frame] = []
    while data:
        decoded = Frame.parse(data)
        assert decoded is not None, "Incomplete frame in client data"
        frame, consumed = decoded
        frames.append(frame)
        data = data[consumed:]
    return frames


def upgrade_response(request: bytes, *, accept: str | None = None, extra: str = "") -> bytes:
    """Build a server upgrade response for the given client upgrade request."""
    key: str | None = None
    for line in request.decode("utf-8").split("\r\n"):
        name, _, value = line.partition(":")
        if name.lower() == "sec-websocket-key":
            key = value.strip()
    assert key is not None, "Missing Sec-WebSocket-Key in upgrade request"
    if accept is None:
        accept = compute_accept_key(key)
    return (
        "HTTP/1.1 101 Switching Protocols\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Accept: {accept}\r\n"
        "Sec-WebSocket-Protocol: sip\r\n"
        f"{extra}"
        "\r\n"
    ).encode("utf-8")


def sip_response(
    status: str = "200 OK", cseq: str = "1 REGISTER", request: str | None = None
) -> str:
    """Build a SIP response, copying the dialog headers from ``request`` if given."""
    headers: list[str] = []
    if request is not None:
        for line in request.split("\r\n")[1:]:
            name, _, _ = line.partition(":")
            if name in {"Via", "To", "From", "Call-ID"}:
                headers.append(line)
    headers.append(f"CSeq: {cseq}")
    headers.append("Content-Length: 0")
    return f"SIP/2.0 {status}\r\n" + "\r\n".join(headers) + "\r\n\r\n"


class FakeTransport(asyncio.Transport):
    """In-memory asyncio transport that records written bytes."""

    def __init__(self):
        super().__init__()
        self.writes: list[bytes] = []
        self.closed = False

    def write(self, data):
        self.writes.append(bytes(data))

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True

    @property
    def written(self) -> bytes:
        return b"".join(self.writes)


class RecordingTransportListener:
    def __init__(self):
        self.events: list[tuple] = []

    def on_open(self):
        self.events.append(("open",))

    def on_message(self, text):
        self.events.append(("message", text))

    def on_close(self, code, reason):
        self.events.append(("close", code, reason))

    def on_error(self, error):
        self.events.append(("error", error))

    def of_kind(self, kind):
        return [event for event in self.events if event[0] == kind]


class RecordingRegistrationListener:
    def __init__(self):
        self.states = []
        self.outcomes = []
        self.logs: list[str] = []
        self.outcome_event = threading.Event()

    def on_state_change(self, state):
        self.states.append(state)

    def on_outcome(self, outcome):
        self.outcomes.append(outcome)
        self.outcome_event.set()

    def on_log(self, message):
        self.logs.append(message)


class FakeConnection:
    """Stands in for :class:`WebSocketConnection` in session tests."""

    def __init__(self, config, listener):
        self.config = config
        self.listener = listener
        self.connected = False
        self.sent: list[str] = []
        self.keepalive_intervals: list[float | None] = []
        self.close_calls = 0

    async def connect(self):
        self.connected = True

    def send_text(self, text):
        self.sent.append(text)

    def start_keepalive(self, interval=None):
        self.keepalive_intervals.append(interval)

    def close(self, code=1000, reason=None):
        self.close_calls += 1

    @property
    def closed(self):
        return self.close_calls > 0


class FakeConnectionFactory:
    def __init__(self):
        self.connections: list[FakeConnection] = []
        self.created = threading.Event()

    def __call__(self, config, listener):
        connection = FakeConnection(config, listener)
        self.connections.append(connection)
        self.created.set()
        return connection

    @property
    def connection(self) -> FakeConnection:
        assert self.created.wait(2.0), "Connection was never created"
        return self.connections[-1]


@pytest.fixture()
def connection_factory():
    return FakeConnectionFactory()


Responder = Callable[[str], Sequence[bytes]]


class MockWebSocketServer:
    """
    Small mock WebSocket server over plain TCP. Accepts a single client,
    answers the opening handshake, then passes every text message received
    to ``responder``, sending back the raw bytes it returns.
    """

    def __init__(
        self,
        responder: Responder | None = None,
        *,
        handshake: bool = True,
        close_after_request: bool = False,
        poll_interval: float = 1e-2,
    ):
        self.responder = responder
        self.handshake = handshake
        self.close_after_request = close_after_request
        self.poll_interval = poll_interval

        self.received_messages: list[str] = []
        self.received_frames: list[Frame] = []
        self.upgrade_request: bytes | None = None

        self.socket = None
        self._port: int | None = None
        self.thread = None
        self.stop_event = threading.Event()

    @property
    def port(self) -> int:
        assert self._port is not None, "Server was never started"
        return self._port

    @property
    def ws_url(self) -> str:
        return f"ws://127.0.0.1:{self.port}/ws"

    def start(self):
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.socket.bind(("127.0.0.1", 0))
        self.socket.listen(1)
        self._port = self.socket.getsockname()[1]
        self.socket.settimeout(self.poll_interval)

        self.thread = threading.Thread(
            target=self._run, daemon=True, name="MockWebSocketServer._run"
        )
        self.stop_event.clear()
        self.thread.start()

    def _accept(self):
        while not self.stop_event.is_set():
            try:
                conn, _ = self.socket.accept()
            except socket.timeout:
                continue
            conn.settimeout(self.poll_interval)
            return conn
        return None

    def _recv(self, conn) -> bytes | None:
        """Receive some bytes, b"" if nothing yet, None if the peer closed."""
        try:
            data = conn.recv(65536)
        except socket.timeout:
            return b""
        except OSError:
            return None
        return data or None

    def _run(self):
        conn = self._accept()
        if conn is None:
            return
        with conn:
            buffer = b""
            while self.upgrade_request is None:
                if self.stop_event.is_set():
                    return
                data = self._recv(conn)
                if data is None:
                    return
                buffer += data
                if b"\r\n\r\n" in buffer:
                    self.upgrade_request, _, buffer = buffer.partition(b"\r\n\r\n")

            if not self.handshake:
                conn.sendall(b"HTTP/1.1 403 Forbidden\r\nContent-Length: 0\r\n\r\n")
                return
            conn.sendall(upgrade_response(self.upgrade_request + b"\r\n\r\n"))

            while not self.stop_event.is_set():
                data = self._recv(conn)
                if data is None:
                    return
                buffer += data
                while (decoded := Frame.parse(buffer)) is not None:
                    frame, consumed = decoded
                    buffer = buffer[consumed:]
                    self.received_frames.append(frame)
                    if frame.opcode == Opcode.CLOSE:
                        return
                    if frame.opcode == Opcode.TEXT:
                        text = frame.payload.decode("utf-8")
                        self.received_messages.append(text)
                        if self.close_after_request:
                            return
                        if self.responder is not None:
                            for reply in self.responder(text):
                                conn.sendall(reply)

    def stop(self):
        self.stop_event.set()
        if self.thread is not None:
            self.thread.join()
        if self.socket is not None:
            self.socket.close()

    def __enter__(self):
        self.start()
        return self

    def __exit__(
        self,
        exctype: type[BaseException] | None,
        excinst: BaseException | None,
        exctb: TracebackType | None,
    ) -> None:
        self.stop()
