"""Helpers, utilities, and other miscellaneous functions and classes."""

from __future__ import annotations

import functools
import random
import secrets
import string
import sys
from collections import OrderedDict
from dataclasses import dataclass as _dtcls
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Iterable,
    Iterator,
    MutableMapping,
    TypeVar,
    cast,
)

from typing_extensions import dataclass_transform


if TYPE_CHECKING:
    from _typeshed import SupportsKeysAndGetItem


_dT = TypeVar("_dT")


@functools.wraps(_dtcls)
@dataclass_transform()
def slots_dataclass(*args: Any, **kwargs: Any) -> Callable[[_dT], _dT]:
    """Wrapper for dataclass decorator that adds slots if supported (py3.10+)."""
    if sys.version_info < (3, 10):
        kwargs.pop("slots", None)
    else:
        kwargs.setdefault("slots", True)
    return cast(Callable[[_dT], _dT], _dtcls(*args, **kwargs))


TOKEN_ALPHABET: str = string.ascii_lowercase + string.digits


def random_token(length: int) -> str:
    """
    Generate a random lowercase alphanumeric token of the given length.

    Only uniqueness matters for SIP tokens (Call-ID, tags, branches),
    so the plain pseudo-random generator is used.
    """
    if length < 0:
        raise ValueError(f"Token length must be non-negative, got {length}")
    return "".join(random.choices(TOKEN_ALPHABET, k=length))


def secure_random_bytes(size: int) -> bytes:
    """Random bytes from the OS CSPRNG, for WebSocket handshake keys and masks."""
    return secrets.token_bytes(size)


_T = TypeVar("_T")


# copied from requests.structures
class CaseInsensitiveDict(MutableMapping[str, _T]):
    """
    A case-insensitive ``dict``-like object.

    Implements all methods and operations of
    ``MutableMapping``.

    All keys are expected to be strings. The structure remembers the
    case of the last key to be set, and ``iter(instance)``, ``keys()``
    and ``items()`` will contain case-sensitive keys. However, querying
    and contains testing is case insensitive::

        cid = CaseInsensitiveDict()
        cid['Sec-WebSocket-Accept'] = 's3pPLMBiTxaQ9kYGzzhZRbK+xOo='
        cid['sec-websocket-accept'] == 's3pPLMBiTxaQ9kYGzzhZRbK+xOo='  # True
        list(cid) == ['Sec-WebSocket-Accept']  # True
    """

    def __init__(
        self,
        data: SupportsKeysAndGetItem[str, _T] | Iterable[tuple[str, _T]] | None = None,
        **kwargs: _T,
    ) -> None:
        self._store: OrderedDict[str, tuple[str, _T]] = OrderedDict()
        if data is None:
            data = {}
        self.update(data, **kwargs)

    def __setitem__(self, key: str, value: _T) -> None:
        # Use the lowercased key for lookups, but store the actual
        # key alongside the value.
        self._store[key.lower()] = (key, value)

    def __getitem__(self, key: str) -> _T:
        return self._store[key.lower()][1]

    def __delitem__(self, key: str) -> None:
        del self._store[key.lower()]

    def __iter__(self) -> Iterator[str]:
        return (casedkey for casedkey, mappedvalue in self._store.values())

    def __len__(self) -> int:
        return len(self._store)

    def __repr__(self) -> str:
        # noinspection PyTypeChecker
        return str(dict(self.items()))
