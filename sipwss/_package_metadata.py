from __future__ import annotations

import importlib.metadata as importlib_metadata
import warnings
from email.message import Message
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

import toml


_PYPROJECT_LOCATIONS: Sequence[tuple[str, ...]] = (
    ("..", "pyproject.toml"),
    ("pyproject.toml",),
)


def _load_metadata() -> Message | Mapping[str, Any] | None:
    """
    Load the package metadata from the installed distribution, falling back to
    the source tree ``pyproject.toml`` when running from a checkout.
    """
    try:
        return importlib_metadata.metadata(__package__ or __name__)
    except importlib_metadata.PackageNotFoundError:
        pass

    package_path = Path(__file__).resolve().parent
    for relpaths in _PYPROJECT_LOCATIONS:
        pyproject_path = Path(package_path, *relpaths)
        if pyproject_path.exists():
            return toml.load(str(pyproject_path))

    warnings.warn(
        "Didn't find distinfo nor pyproject.toml for package metadata", stacklevel=2
    )
    return None


metadata: Message | Mapping[str, Any] | None = _load_metadata()


def get_metadata(
    distinfo_key: str,
    toml_getter: str | int | Sequence[str | int] | Callable[[Mapping[str, Any]], Any],
) -> Any:
    """
    Get a metadata value, either from the distribution info (by ``distinfo_key``)
    or from the parsed ``pyproject.toml`` (by key path or getter callable).
    """
    if metadata is None:
        return None
    if isinstance(metadata, Message):
        return metadata.get(distinfo_key)
    try:
        if callable(toml_getter):
            return toml_getter(metadata)
        if isinstance(toml_getter, (list, tuple)):
            value: Any = metadata
            for key in toml_getter:
                value = value[key]
            return value
        return metadata[toml_getter]
    except (KeyError, IndexError, TypeError):
        return None
