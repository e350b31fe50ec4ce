"""Ports for durable job state and time-bounded markers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable

type JsonValue = None | bool | int | float | str | list[JsonValue] | dict[str, JsonValue]


@runtime_checkable
class KeyValueStore(Protocol):
    """Durable JSON key-value store holding pipeline, job and accumulator state."""

    def get(self, key: str, default: JsonValue = None) -> JsonValue: ...

    def set(self, key: str, value: JsonValue) -> None: ...

    def delete(self, key: str) -> None: ...

    def update(self, key: str, mutate: Callable[[JsonValue], JsonValue]) -> JsonValue:
        """Atomically replace the value under ``key`` with ``mutate(current)``."""
        ...


@runtime_checkable
class TTLCache(Protocol):
    """Entries that silently disappear after their time-to-live."""

    def set_with_ttl(self, key: str, value: JsonValue, seconds: int) -> None: ...

    def get(self, key: str) -> JsonValue: ...

    def delete(self, key: str) -> None: ...

    def keys_with_prefix(self, prefix: str) -> list[str]: ...
