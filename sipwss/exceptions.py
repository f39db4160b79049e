"""Exception classes for the sipwss library."""

from __future__ import annotations


class SipWSSException(Exception):
    """Base class for all custom library exceptions."""


class ParseError(SipWSSException, ValueError):
    """Raised when received data cannot be parsed."""


class ConfigError(SipWSSException, ValueError):
    """Raised when the registration configuration is invalid or incomplete."""


class WebSocketException(SipWSSException):
    """Base class for all exceptions raised by the WebSocket module."""


class HandshakeError(WebSocketException):
    """
    The WebSocket opening handshake failed: malformed or non-101 status line,
    ``Sec-WebSocket-Accept`` mismatch, or a header block that is not UTF-8.
    """


class FrameDecodeError(WebSocketException, ParseError):
    """
    A WebSocket frame cannot be decoded (unknown opcode, unrepresentable length).
    Not raised for incomplete frames, which simply wait for more bytes.
    """


class TransportError(SipWSSException, ConnectionError):
    """Raised when the underlying stream / TLS connection fails."""


class SIPException(SipWSSException):
    """Base class for all exceptions raised by the SIP module."""


class SIPParseError(SIPException, ParseError):
    """Exceptions related to SIP messages / data parsing."""


class SIPProtocolMismatch(SIPException):
    """A received SIP message does not belong to the outstanding transaction."""


class SIPTimeout(SIPException, TimeoutError):
    """Raised when a SIP transaction times out."""
