"""WebSocket client opening handshake, as defined in :rfc:`6455#section-4`."""

from __future__ import annotations

import base64
import hashlib
import logging
import re
from dataclasses import field as dataclass_field

from sipwss.constants import WEBSOCKET_GUID, WEBSOCKET_VERSION
from sipwss.exceptions import HandshakeError
from sipwss.helpers import CaseInsensitiveDict, secure_random_bytes, slots_dataclass


__all__ = [
    "HandshakeState",
    "compute_accept_key",
    "generate_handshake_key",
]


_logger = logging.getLogger(__name__)


HANDSHAKE_KEY_SIZE: int = 16
HEADER_TERMINATOR: bytes = b"\r\n\r\n"
STATUS_LINE_PAT: str = r"^HTTP/1\.\d 101(?:\s|$)"


def compute_accept_key(key: str) -> str:
    """Compute the expected ``Sec-WebSocket-Accept`` value for the given client key."""
    digest: bytes = hashlib.sha1((key + WEBSOCKET_GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def generate_handshake_key() -> str:
    """Generate a new random ``Sec-WebSocket-Key`` (16 random bytes, base64 encoded)."""
    return base64.b64encode(secure_random_bytes(HANDSHAKE_KEY_SIZE)).decode("ascii")


@slots_dataclass
class HandshakeState:
    """
    State of a single client opening handshake.

    :param host: The value for the ``Host`` header (``host`` or ``host:port``).
    :param resource: The request target, path plus optional query.
    :param subprotocol: The requested subprotocol, if any.
    :param origin: The ``Origin`` header value, if any.
    :param user_agent: The ``User-Agent`` header value, if any.
    :param key: The client ``Sec-WebSocket-Key``. Randomly generated by default.
    """

    host: str
    resource: str = "/"
    subprotocol: str | None = None
    origin: str | None = None
    user_agent: str | None = None
    key: str = dataclass_field(default_factory=generate_handshake_key)

    response_headers: CaseInsensitiveDict[str] | None = dataclass_field(
        default=None, init=False
    )
    _buffer: bytearray = dataclass_field(
        default_factory=bytearray, init=False, repr=False
    )

    @property
    def expected_accept(self) -> str:
        """The ``Sec-WebSocket-Accept`` value the server must answer with."""
        return compute_accept_key(self.key)

    @property
    def completed(self) -> bool:
        """Whether a valid upgrade response was received."""
        return self.response_headers is not None

    def build_request(self) -> bytes:
        """Compose the HTTP/1.1 upgrade request."""
        headers: list[tuple[str, str]] = [
            ("Host", self.host),
            ("Upgrade", "websocket"),
            ("Connection", "Upgrade"),
            ("Sec-WebSocket-Key", self.key),
            ("Sec-WebSocket-Version", WEBSOCKET_VERSION),
        ]
        if self.subprotocol:
            headers.append(("Sec-WebSocket-Protocol", self.subprotocol))
        if self.origin:
            headers.append(("Origin", self.origin))
        if self.user_agent:
            headers.append(("User-Agent", self.user_agent))

        request: str = f"GET {self.resource} HTTP/1.1\r\n"
        request += "".join(f"{name}: {value}\r\n" for name, value in headers)
        request += "\r\n"
        return request.encode("utf-8")

    def feed(self, data: bytes) -> bytes | None:
        """
        Buffer bytes received from the server until the end of the response headers.

        :return: None while the response headers are incomplete, otherwise the
            bytes received past the headers (possibly empty), which already
            belong to the WebSocket frames stream.
        :raises HandshakeError: If the response is not a valid upgrade response.
        """
        self._buffer += data
        end: int = self._buffer.find(HEADER_TERMINATOR)
        if end < 0:
            return None
        head: bytes = bytes(self._buffer[:end])
        leftover: bytes = bytes(self._buffer[end + len(HEADER_TERMINATOR) :])
        self._buffer.clear()
        self.validate_response(head)
        return leftover

    def validate_response(self, head: bytes) -> CaseInsensitiveDict[str]:
        """
        Validate the server upgrade response headers block.

        :raises HandshakeError: If the block is not UTF-8, the status is not 101,
            or the accept key doesn't match.
        """
        try:
            head_str: str = head.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise HandshakeError("Handshake response is not UTF-8") from exc

        _logger.debug(f"WebSocket upgrade response:\n{head_str}")

        status_line, *header_lines = head_str.split("\r\n")
        if not re.match(STATUS_LINE_PAT, status_line):
            raise HandshakeError(f"Handshake failed: {status_line}")

        headers: CaseInsensitiveDict[str] = CaseInsensitiveDict()
        for line in header_lines:
            name, sep, value = line.partition(":")
            if not sep:
                continue
            headers.setdefault(name.strip(), value.strip())

        accept: str | None = headers.get("Sec-WebSocket-Accept")
        if accept != self.expected_accept:
            raise HandshakeError(f"Bad Sec-WebSocket-Accept: {accept!r}")

        server_subprotocol: str | None = headers.get("Sec-WebSocket-Protocol")
        if (
            self.subprotocol
            and server_subprotocol is not None
            and server_subprotocol.lower() != self.subprotocol.lower()
        ):
            _logger.warning(
                f"Server subprotocol mismatch: {server_subprotocol}"
                f" (expected {self.subprotocol})"
            )

        self.response_headers = headers
        return headers
