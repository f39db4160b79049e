"""Various constants used by the sipwss library."""

from __future__ import annotations


SUPPORTED_SIP_VERSIONS: list[str] = ["SIP/2.0"]

WEBSOCKET_GUID: str = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"
WEBSOCKET_VERSION: str = "13"
WEBSOCKET_SUBPROTOCOL: str = "sip"

DEFAULT_WS_PORT: int = 80
DEFAULT_WSS_PORT: int = 443

SIP_BRANCH_MAGIC_COOKIE: str = "z9hG4bK"
SIP_MAX_FORWARDS: int = 69
SIP_ALLOWED_METHODS: tuple[str, ...] = (
    "INVITE",
    "ACK",
    "CANCEL",
    "BYE",
    "UPDATE",
    "MESSAGE",
    "OPTIONS",
    "REFER",
    "INFO",
    "NOTIFY",
)
SIP_SUPPORTED_OPTIONS: tuple[str, ...] = ("path", "gruu", "outbound")

DEFAULT_REGISTER_EXPIRES: int = 600
DEFAULT_REGISTER_TIMEOUT: float = 12.0
DEFAULT_KEEPALIVE_INTERVAL: float = 25.0
DEFAULT_CLOSE_CODE: int = 1000
