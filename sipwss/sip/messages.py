"""SIP messages parsing and serialization, as defined in :rfc:`3261#section-7`."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import field as dataclass_field
from typing import Iterable, Mapping, NamedTuple, Optional

from typing_extensions import Self

from sipwss.constants import SUPPORTED_SIP_VERSIONS
from sipwss.exceptions import SIPParseError
from sipwss.helpers import slots_dataclass
from sipwss.structures import SIPURI


__all__ = [
    "SIPMethod",
    "CSeq",
    "SIPMessage",
    "build_request",
]


_logger = logging.getLogger(__name__)


SIP_VERSION: str = SUPPORTED_SIP_VERSIONS[0]


class SIPMethod(enum.Enum):
    """SIP requests methods, defined in :rfc:`3261#section-27.4`."""

    REGISTER = "REGISTER"
    INVITE = "INVITE"
    ACK = "ACK"
    BYE = "BYE"
    CANCEL = "CANCEL"
    UPDATE = "UPDATE"
    REFER = "REFER"
    PRACK = "PRACK"
    SUBSCRIBE = "SUBSCRIBE"
    NOTIFY = "NOTIFY"
    PUBLISH = "PUBLISH"
    MESSAGE = "MESSAGE"
    INFO = "INFO"
    OPTIONS = "OPTIONS"

    def __str__(self) -> str:
        return self.value

    def matches(self, method: str | None) -> bool:
        """Whether the given method name is this method (case-insensitive)."""
        return method is not None and method.upper() == self.value


class CSeq(NamedTuple):
    """A parsed ``CSeq`` header: the sequence number and the method name."""

    number: Optional[int] = None
    method: Optional[str] = None

    @classmethod
    def parse(cls, value: str | None) -> Self:
        """
        Parse a ``CSeq`` header value, e.g. ``1 REGISTER``.
        Missing or malformed parts are returned as None.
        """
        if value is None:
            return cls()
        parts: list[str] = value.split()
        number: int | None = None
        if parts and re.fullmatch(r"\d+", parts[0]):
            number = int(parts[0])
        method: str | None = parts[1] if len(parts) >= 2 else None
        return cls(number=number, method=method)

    def __str__(self) -> str:
        return f"{self.number} {self.method}"


@slots_dataclass
class SIPMessage:
    """
    A generic SIP message, either a request or a response.

    Headers are kept as a mapping of lowercased names to a single value:
    only the first occurrence of each header is retained.

    :param start_line: The request line or status line.
    :param headers: The headers, keyed by lowercased name.
    :param body: The message body, possibly empty.
    """

    start_line: str
    headers: Mapping[str, str] = dataclass_field(default_factory=dict)
    body: str = ""

    @classmethod
    def parse(cls, raw: str | bytes) -> Self | None:
        """
        Parse a SIP message from its text.

        :return: The parsed message, or None if ``raw`` is empty or blank.
        :raises SIPParseError: If ``raw`` is bytes that are not valid UTF-8.
        """
        if isinstance(raw, (bytes, bytearray)):
            raw = cls._decode(raw)
        trimmed: str = raw.strip()
        if not trimmed:
            return None

        normalized: str = trimmed.replace("\r\n", "\n")
        head, _, body = normalized.partition("\n\n")
        start_line, *header_lines = head.split("\n")

        headers: dict[str, str] = {}
        for line in header_lines:
            name, sep, value = line.strip().partition(":")
            if not sep:
                continue
            headers.setdefault(name.strip().lower(), value.strip())

        return cls(start_line=start_line.strip(), headers=headers, body=body)

    @staticmethod
    def _decode(raw: bytes | bytearray) -> str:
        try:
            return bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SIPParseError("SIP message is not valid UTF-8") from exc

    @property
    def is_response(self) -> bool:
        return self.start_line.upper().startswith(SIP_VERSION)

    @property
    def status_code(self) -> int | None:
        """The status code of a response, None for requests or malformed status lines."""
        if not self.is_response:
            return None
        parts: list[str] = self.start_line.split()
        if len(parts) < 2 or not re.fullmatch(r"\d+", parts[1]):
            return None
        return int(parts[1])

    @property
    def reason_phrase(self) -> str:
        """The reason phrase of a response, empty if missing or for requests."""
        if not self.is_response:
            return ""
        parts: list[str] = self.start_line.split(" ", 2)
        return parts[2] if len(parts) == 3 else ""

    def header(self, name: str) -> str | None:
        """Get a header value by name, case-insensitively."""
        return self.headers.get(name.lower())

    @property
    def cseq(self) -> CSeq:
        return CSeq.parse(self.header("CSeq"))

    @property
    def call_id(self) -> str | None:
        return self.header("Call-ID")

    @property
    def via(self) -> str | None:
        return self.header("Via")

    @property
    def to(self) -> str | None:
        return self.header("To")

    @property
    def from_(self) -> str | None:
        return self.header("From")

    def __str__(self) -> str:
        lines: list[str] = [self.start_line]
        lines.extend(f"{name}: {value}" for name, value in self.headers.items())
        return "\r\n".join(lines) + "\r\n\r\n" + self.body


def build_request(
    method: SIPMethod | str,
    uri: SIPURI | str,
    headers: Iterable[tuple[str, str]],
    body: str = "",
) -> str:
    """
    Serialize a SIP request, with CRLF line endings.

    Headers are written in the given order, followed by a ``Content-Length``
    computed from the UTF-8 encoded body. Any ``Content-Length`` in ``headers``
    is the caller's responsibility.
    """
    message: str = f"{method} {uri} {SIP_VERSION}\r\n"
    message += "".join(f"{name}: {value}\r\n" for name, value in headers)
    message += f"Content-Length: {len(body.encode('utf-8'))}\r\n"
    message += "\r\n"
    message += body
    return message
