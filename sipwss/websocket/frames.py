"""WebSocket frames encoding and decoding, as defined in :rfc:`6455#section-5`."""

from __future__ import annotations

import enum
import sys
from typing import ClassVar, Union

import numpy as np
from cbitstruct import CompiledFormat
from typing_extensions import Self

from sipwss.exceptions import FrameDecodeError
from sipwss.helpers import secure_random_bytes, slots_dataclass


__all__ = [
    "Opcode",
    "Frame",
    "apply_mask",
    "encode_frame",
    "decode_frame",
    "build_close_payload",
    "parse_close_payload",
]


BytesLike = Union[bytes, bytearray, memoryview]

MASK_KEY_SIZE: int = 4
MAX_INLINE_LENGTH: int = 125
EXTENDED_LENGTH_16: int = 126
EXTENDED_LENGTH_64: int = 127


class Opcode(enum.IntEnum):
    """WebSocket frame opcodes, as defined in :rfc:`6455#section-11.8`."""

    CONTINUATION = 0x0
    TEXT = 0x1
    BINARY = 0x2
    CLOSE = 0x8
    PING = 0x9
    PONG = 0xA


def apply_mask(data: BytesLike, mask_key: bytes) -> bytes:
    """
    XOR each byte of ``data`` with ``mask_key[i % 4]``.
    The operation is its own inverse, so it both masks and unmasks.
    """
    if len(mask_key) != MASK_KEY_SIZE:
        raise ValueError(f"Mask key must be {MASK_KEY_SIZE} bytes, got {len(mask_key)}")
    if not data:
        return b""
    payload = np.frombuffer(data, dtype=np.uint8)
    key = np.frombuffer(mask_key, dtype=np.uint8)
    return (payload ^ np.resize(key, payload.shape)).tobytes()


@slots_dataclass
class Frame:
    """
    A single WebSocket frame.

    :param opcode: The frame opcode.
    :param payload: The (unmasked) application payload.
    :param fin: Whether this is the final fragment of a message.
    """

    opcode: Opcode
    payload: bytes = b""
    fin: bool = True

    # FIN, RSV1-3, opcode, MASK, 7-bit payload length
    _header_format: ClassVar[CompiledFormat] = CompiledFormat("b1u3u4b1u7")

    @classmethod
    def header_len(cls) -> int:
        """Length in bytes of the fixed part of the frame header."""
        return int(cls._header_format.calcsize()) // 8

    @classmethod
    def parse(cls, buffer: BytesLike) -> tuple[Self, int] | None:
        """
        Decode the first frame in ``buffer``.

        :param buffer: The received bytes, starting at a frame boundary.
        :return: The decoded frame and the number of bytes it used, or None
            if ``buffer`` does not yet hold a complete frame.
        :raises FrameDecodeError: If the frame has an unknown opcode or a
            length that cannot be represented.
        """
        fixed_len: int = cls.header_len()
        if len(buffer) < fixed_len:
            return None

        fin, _rsv, opcode_raw, masked, length = cls._header_format.unpack(
            bytes(buffer[:fixed_len])
        )
        try:
            opcode = Opcode(opcode_raw)
        except ValueError:
            raise FrameDecodeError(f"Unknown WebSocket opcode: {opcode_raw:#x}") from None

        offset: int = fixed_len
        if length == EXTENDED_LENGTH_16:
            if len(buffer) < offset + 2:
                return None
            length = int.from_bytes(buffer[offset : offset + 2], "big")
            offset += 2
        elif length == EXTENDED_LENGTH_64:
            if len(buffer) < offset + 8:
                return None
            length = int.from_bytes(buffer[offset : offset + 8], "big")
            if length > sys.maxsize:
                raise FrameDecodeError(f"WebSocket frame too large: {length} bytes")
            offset += 8

        mask_key: bytes | None = None
        if masked:
            if len(buffer) < offset + MASK_KEY_SIZE:
                return None
            mask_key = bytes(buffer[offset : offset + MASK_KEY_SIZE])
            offset += MASK_KEY_SIZE

        if len(buffer) < offset + length:
            return None

        payload: bytes = bytes(buffer[offset : offset + length])
        if mask_key is not None:
            payload = apply_mask(payload, mask_key)

        return cls(opcode=opcode, payload=payload, fin=bool(fin)), offset + length

    def serialize(self, mask_key: bytes | None = None) -> bytes:
        """
        Encode the frame, masking the payload if a ``mask_key`` is given.
        The shortest length encoding (7-bit, 16-bit or 64-bit) is picked.
        """
        length: int = len(self.payload)
        extended_length: bytes = b""
        if length <= MAX_INLINE_LENGTH:
            length_field = length
        elif length <= 0xFFFF:
            length_field = EXTENDED_LENGTH_16
            extended_length = length.to_bytes(2, "big")
        else:
            length_field = EXTENDED_LENGTH_64
            extended_length = length.to_bytes(8, "big")

        header: bytes = self._header_format.pack(
            self.fin, 0, int(self.opcode), mask_key is not None, length_field
        )
        if mask_key is None:
            return header + extended_length + self.payload
        return header + extended_length + mask_key + apply_mask(self.payload, mask_key)


def encode_frame(opcode: Opcode | int, payload: BytesLike = b"") -> bytes:
    """
    Encode a single, final (FIN set), client frame.
    A fresh random mask key is generated for every call.
    """
    frame = Frame(opcode=Opcode(opcode), payload=bytes(payload), fin=True)
    return frame.serialize(mask_key=secure_random_bytes(MASK_KEY_SIZE))


def decode_frame(buffer: BytesLike) -> tuple[Frame, int] | None:
    """Decode the first frame in ``buffer``, see :meth:`Frame.parse`."""
    return Frame.parse(buffer)


def build_close_payload(code: int, reason: str | None = None) -> bytes:
    """Build a Close frame payload: a 2-byte big-endian status code + UTF-8 reason."""
    payload: bytes = code.to_bytes(2, "big")
    if reason:
        payload += reason.encode("utf-8")
    return payload


def parse_close_payload(payload: bytes) -> tuple[int | None, str | None]:
    """
    Parse a Close frame payload into its status code and reason.
    Missing parts, or a reason that is not valid UTF-8, are returned as None.
    """
    if len(payload) < 2:
        return None, None
    code: int = int.from_bytes(payload[:2], "big")
    reason: str | None = None
    if len(payload) > 2:
        try:
            reason = payload[2:].decode("utf-8")
        except UnicodeDecodeError:
            reason = None
    return code, reason
