"""WebSocket client connection, implemented as an asyncio protocol over a TLS stream."""

from __future__ import annotations

import asyncio
import enum
import logging
import ssl
from dataclasses import field as dataclass_field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from typing_extensions import Self, override

from sipwss.constants import (
    DEFAULT_CLOSE_CODE,
    DEFAULT_KEEPALIVE_INTERVAL,
    DEFAULT_WSS_PORT,
    WEBSOCKET_SUBPROTOCOL,
)
from sipwss.exceptions import FrameDecodeError, HandshakeError, TransportError
from sipwss.helpers import secure_random_bytes, slots_dataclass

from .frames import (
    Frame,
    Opcode,
    build_close_payload,
    decode_frame,
    encode_frame,
    parse_close_payload,
)
from .handshake import HandshakeState


if TYPE_CHECKING:
    from sipwss.config import RegistrationConfig


__all__ = [
    "ConnectionState",
    "TransportListener",
    "FragmentAssembly",
    "WebSocketConnection",
]


_logger = logging.getLogger(__name__)


PING_PAYLOAD_SIZE: int = 4


class ConnectionState(enum.Enum):
    """Lifecycle states of a :class:`WebSocketConnection`."""

    IDLE = "idle"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {ConnectionState.CLOSED, ConnectionState.FAILED}


@runtime_checkable
class TransportListener(Protocol):
    """
    Observer of a :class:`WebSocketConnection`.
    All the methods are called from the event loop thread of the connection.
    """

    def on_open(self) -> None:
        """The opening handshake completed, the connection can send messages."""

    def on_message(self, text: str) -> None:
        """A complete text message was received."""

    def on_close(self, code: int | None, reason: str | None) -> None:
        """
        The connection was closed by the server, either with a Close frame
        (with its optional status code and reason) or by closing the stream.
        """

    def on_error(self, error: Exception) -> None:
        """The connection failed. No more events will follow."""


@slots_dataclass
class FragmentAssembly:
    """
    Reassembly of a fragmented text message.
    Only one fragmented message can be in flight at any time.
    """

    opcode: Opcode | None = None
    payload: bytearray = dataclass_field(default_factory=bytearray)

    @property
    def in_progress(self) -> bool:
        return self.opcode is not None

    def reset(self) -> None:
        self.opcode = None
        self.payload = bytearray()

    def feed(self, frame: Frame) -> str | None:
        """
        Process a text or continuation frame.

        :return: The decoded text when the frame completes a message, else None.
            Messages that are not valid UTF-8 are dropped.
        """
        if frame.opcode == Opcode.CONTINUATION:
            if not self.in_progress:
                _logger.debug("Ignoring continuation frame without a started message")
                return None
            self.payload += frame.payload
            if not frame.fin:
                return None
            data: bytes = bytes(self.payload)
            self.reset()
        elif frame.opcode == Opcode.TEXT:
            if not frame.fin:
                self.opcode = frame.opcode
                self.payload = bytearray(frame.payload)
                return None
            data = frame.payload
        else:
            raise ValueError(f"Not a data frame for text reassembly: {frame.opcode!r}")

        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            _logger.warning(f"Dropping text message that is not UTF-8 ({len(data)} bytes)")
            return None


class WebSocketConnection(asyncio.Protocol):
    """
    A client WebSocket connection, running the opening handshake, decoding
    received frames and notifying a :class:`TransportListener` of the events.

    State machine: ``idle -> connecting -> handshaking -> open -> closed``,
    with ``failed`` reachable from every non-terminal state. Once terminal,
    any further received data is ignored and no more events are emitted.

    :param host: The host to connect to.
    :param port: The TCP port to connect to.
    :param listener: The observer notified of the connection events.
    :param resource: The request target (path and query) for the upgrade request.
    :param use_tls: Whether to secure the stream with TLS.
    :param host_header: The ``Host`` header value. Defaults to ``host``.
    :param subprotocol: The WebSocket subprotocol to request, if any.
    :param origin: The ``Origin`` header value, if any.
    :param user_agent: The ``User-Agent`` header value, if any.
    :param keepalive_interval: The default interval between keepalive pings.
    :param ssl_context: A custom TLS context. If None, the default one is used.
    """

    def __init__(  # noqa: PLR0913
        self,
        host: str,
        port: int = DEFAULT_WSS_PORT,
        *,
        listener: TransportListener,
        resource: str = "/",
        use_tls: bool = True,
        host_header: str | None = None,
        subprotocol: str | None = WEBSOCKET_SUBPROTOCOL,
        origin: str | None = None,
        user_agent: str | None = None,
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        ssl_context: ssl.SSLContext | None = None,
    ):
        self.host: str = host
        self.port: int = port
        self.resource: str = resource
        self.use_tls: bool = use_tls
        self.host_header: str = host_header or host
        self.subprotocol: str | None = subprotocol
        self.origin: str | None = origin
        self.user_agent: str | None = user_agent
        self.keepalive_interval: float = keepalive_interval

        self._listener: TransportListener = listener
        self._ssl_context: ssl.SSLContext | None = ssl_context

        self._state: ConnectionState = ConnectionState.IDLE
        self._transport: asyncio.Transport | None = None
        self._handshake: HandshakeState | None = None
        self._buffer: bytearray = bytearray()
        self._fragments: FragmentAssembly = FragmentAssembly()
        self._keepalive_task: asyncio.Task | None = None

    @classmethod
    def from_config(cls, config: RegistrationConfig, listener: TransportListener) -> Self:
        """Create a connection to the gateway described by the given configuration."""
        return cls(
            config.ws_host,
            config.ws_port,
            listener=listener,
            resource=config.ws_resource,
            use_tls=config.use_tls,
            host_header=config.ws_host_header,
            subprotocol=config.subprotocol,
            origin=config.origin,
            user_agent=config.user_agent,
            keepalive_interval=config.keepalive_interval,
        )

    @property
    def state(self) -> ConnectionState:
        """The current connection state."""
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == ConnectionState.OPEN

    @property
    def keepalive_active(self) -> bool:
        return self._keepalive_task is not None and not self._keepalive_task.done()

    async def connect(self) -> None:
        """
        Open the stream connection to the server. The opening handshake starts
        as soon as the stream is ready. Connection failures are reported
        to the listener, not raised.
        """
        if self._state != ConnectionState.IDLE:
            raise RuntimeError(f"Cannot connect, connection is {self._state.value}")
        self._state = ConnectionState.CONNECTING

        ssl_context: ssl.SSLContext | None = None
        if self.use_tls:
            ssl_context = self._ssl_context or ssl.create_default_context()

        _logger.debug(
            f"Connecting to {self.host}:{self.port} ({'TLS' if self.use_tls else 'plain'})"
        )
        loop = asyncio.get_running_loop()
        try:
            await loop.create_connection(
                lambda: self,
                self.host,
                self.port,
                ssl=ssl_context,
                server_hostname=self.host if ssl_context is not None else None,
            )
        except OSError as exc:
            self._fail(TransportError(f"Cannot connect to {self.host}:{self.port}: {exc}"))

    @override
    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        assert isinstance(transport, asyncio.Transport)
        self._transport = transport
        if self._state.is_terminal:
            # closed while still connecting
            transport.close()
            return

        _logger.debug(f"Stream connected to {self.host}:{self.port}")
        self._state = ConnectionState.HANDSHAKING
        self._handshake = HandshakeState(
            host=self.host_header,
            resource=self.resource,
            subprotocol=self.subprotocol,
            origin=self.origin,
            user_agent=self.user_agent,
        )
        request: bytes = self._handshake.build_request()
        _logger.debug(f"WebSocket upgrade request:\n{request.decode('utf-8')}")
        transport.write(request)

    @override
    def data_received(self, data: bytes) -> None:
        if self._state.is_terminal:
            return

        if self._state == ConnectionState.HANDSHAKING:
            assert self._handshake is not None
            try:
                leftover: bytes | None = self._handshake.feed(data)
            except HandshakeError as exc:
                self._fail(exc)
                return
            if leftover is None:
                return

            self._handshake = None
            self._state = ConnectionState.OPEN
            _logger.info(f"WebSocket handshake complete with {self.host_header}")
            self._listener.on_open()
            data = leftover

        if self._state != ConnectionState.OPEN:
            return
        self._buffer += data
        self._process_frames()

    @override
    def connection_lost(self, exc: Exception | None) -> None:
        self._transport = None
        self.stop_keepalive()
        if self._state.is_terminal:
            return
        if exc is not None:
            error = TransportError(str(exc) or exc.__class__.__name__)
            error.__cause__ = exc
            self._fail(error)
            return

        _logger.info("Connection closed by peer")
        self._state = ConnectionState.CLOSED
        self._listener.on_close(None, "socket closed")

    def _process_frames(self) -> None:
        while self._state == ConnectionState.OPEN:
            try:
                decoded: tuple[Frame, int] | None = decode_frame(self._buffer)
            except FrameDecodeError as exc:
                self._fail(exc)
                return
            if decoded is None:
                return
            frame, consumed = decoded
            del self._buffer[:consumed]
            self._handle_frame(frame)

    def _handle_frame(self, frame: Frame) -> None:
        if frame.opcode == Opcode.PING:
            _logger.debug(f"WS <- PING ({len(frame.payload)} bytes), replying PONG")
            self._send_frame(Opcode.PONG, frame.payload)

        elif frame.opcode == Opcode.PONG:
            _logger.debug(f"WS <- PONG ({len(frame.payload)} bytes)")

        elif frame.opcode == Opcode.CLOSE:
            code, reason = parse_close_payload(frame.payload)
            _logger.debug(f"WS <- CLOSE code={code} reason={reason}")
            self.stop_keepalive()
            self._state = ConnectionState.CLOSED
            self._listener.on_close(code, reason)
            if self._transport is not None:
                self._transport.close()

        elif frame.opcode == Opcode.BINARY:
            _logger.debug(f"Ignoring binary frame ({len(frame.payload)} bytes)")

        elif (text := self._fragments.feed(frame)) is not None:
            self._listener.on_message(text)

    def _send_frame(self, opcode: Opcode, payload: bytes = b"") -> None:
        if self._transport is None or self._transport.is_closing():
            _logger.debug(f"Cannot send {opcode.name} frame, stream is closed")
            return
        self._transport.write(encode_frame(opcode, payload))

    def send_text(self, text: str) -> None:
        """Send a text message. Ignored if the connection is not open."""
        if not self.is_open:
            _logger.debug(f"send_text ignored, connection is {self._state.value}")
            return
        self._send_frame(Opcode.TEXT, text.encode("utf-8"))

    def ping(self) -> None:
        """Send a ping with a random payload. Ignored if the connection is not open."""
        if not self.is_open:
            return
        payload: bytes = secure_random_bytes(PING_PAYLOAD_SIZE)
        self._send_frame(Opcode.PING, payload)
        _logger.debug(f"WS -> PING ({len(payload)} bytes)")

    def start_keepalive(self, interval: float | None = None) -> None:
        """
        Start sending periodic pings, replacing any keepalive already running.
        Must be called from within the event loop.
        """
        self.stop_keepalive()
        if interval is None:
            interval = self.keepalive_interval
        self._keepalive_task = asyncio.get_running_loop().create_task(
            self._keepalive(interval),
            name=f"{self.__class__.__name__}.keepalive-{id(self)} task",
        )

    def stop_keepalive(self) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None

    async def _keepalive(self, interval: float) -> None:
        while self.is_open:
            await asyncio.sleep(interval)
            self.ping()

    def close(self, code: int = DEFAULT_CLOSE_CODE, reason: str | None = None) -> None:
        """
        Close the connection, sending a Close frame first if the handshake
        completed. A locally initiated close does not notify the listener.
        """
        if self._state.is_terminal:
            return
        was_open: bool = self.is_open
        self.stop_keepalive()
        self._state = ConnectionState.CLOSED
        self._handshake = None
        if self._transport is None:
            return
        if was_open:
            _logger.debug(f"WS -> CLOSE code={code} reason={reason}")
            self._send_frame(Opcode.CLOSE, build_close_payload(code, reason))
        self._transport.close()

    def _fail(self, error: Exception) -> None:
        if self._state.is_terminal:
            return
        _logger.error(f"WebSocket connection failed: {error}")
        self.stop_keepalive()
        self._state = ConnectionState.FAILED
        self._handshake = None
        self._listener.on_error(error)
        if self._transport is not None:
            self._transport.close()
