"""Key-value and TTL stores kept in the pipeline database."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from entigraph.adapters.sqlalchemy.mappings import cache_entry_table, state_entry_table
from entigraph.domain.errors import ConcurrentUpdateError

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.orm import Session

    from entigraph.domain.ports import JsonValue

log = logging.getLogger(__name__)

MAX_UPDATE_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class SqlAlchemyKeyValueStore:
    """JSON values in ``state_entry`` with an optimistic version column."""

    def __init__(self, session: Session, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.session = session
        self._clock = clock

    def get(self, key: str, default: JsonValue = None) -> JsonValue:
        stmt = select(state_entry_table.c.value).where(state_entry_table.c.key == key)
        row = self.session.execute(stmt).first()
        if row is None or row[0] is None:
            return default
        return row[0]

    def set(self, key: str, value: JsonValue) -> None:
        result = self.session.execute(
            update(state_entry_table)
            .where(state_entry_table.c.key == key)
            .values(
                value=value,
                version=state_entry_table.c.version + 1,
                updated_at=self._clock(),
            )
        )
        if result.rowcount:  # pyright: ignore[reportAttributeAccessIssue]
            return
        if not self._insert(key, value):
            self.set(key, value)

    def delete(self, key: str) -> None:
        self.session.execute(delete(state_entry_table).where(state_entry_table.c.key == key))

    def update(self, key: str, mutate: Callable[[JsonValue], JsonValue]) -> JsonValue:
        """Apply ``mutate`` under compare-and-swap on the row version."""

        for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
            stmt = select(state_entry_table.c.value, state_entry_table.c.version).where(
                state_entry_table.c.key == key
            )
            row = self.session.execute(stmt).first()
            if row is None:
                value = mutate(None)
                if self._insert(key, value):
                    return value
            else:
                current, version = row
                value = mutate(current)
                result = self.session.execute(
                    update(state_entry_table)
                    .where(state_entry_table.c.key == key)
                    .where(state_entry_table.c.version == version)
                    .values(value=value, version=version + 1, updated_at=self._clock())
                )
                if result.rowcount:  # pyright: ignore[reportAttributeAccessIssue]
                    return value
            log.debug("Concurrent update on state key %s (attempt %s)", key, attempt)
        raise ConcurrentUpdateError(f"Could not update state key {key!r}")

    def _insert(self, key: str, value: JsonValue) -> bool:
        try:
            with self.session.begin_nested():
                self.session.execute(
                    insert(state_entry_table).values(
                        key=key, value=value, version=1, updated_at=self._clock()
                    )
                )
        except IntegrityError:
            return False
        return True


class SqlAlchemyTTLCache:
    """Expiring entries in ``cache_entry``; expired rows read as absent."""

    def __init__(self, session: Session, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.session = session
        self._clock = clock

    def set_with_ttl(self, key: str, value: JsonValue, seconds: int) -> None:
        expires_at = self._clock() + timedelta(seconds=seconds)
        result = self.session.execute(
            update(cache_entry_table)
            .where(cache_entry_table.c.key == key)
            .values(value=value, expires_at=expires_at)
        )
        if result.rowcount:  # pyright: ignore[reportAttributeAccessIssue]
            return
        try:
            with self.session.begin_nested():
                self.session.execute(
                    insert(cache_entry_table).values(key=key, value=value, expires_at=expires_at)
                )
        except IntegrityError:
            self.set_with_ttl(key, value, seconds)

    def get(self, key: str) -> JsonValue:
        stmt = (
            select(cache_entry_table.c.value)
            .where(cache_entry_table.c.key == key)
            .where(cache_entry_table.c.expires_at > self._clock())
        )
        row = self.session.execute(stmt).first()
        return None if row is None else row[0]

    def delete(self, key: str) -> None:
        self.session.execute(delete(cache_entry_table).where(cache_entry_table.c.key == key))

    def keys_with_prefix(self, prefix: str) -> list[str]:
        now = self._clock()
        self.session.execute(delete(cache_entry_table).where(cache_entry_table.c.expires_at <= now))
        stmt = (
            select(cache_entry_table.c.key)
            .where(cache_entry_table.c.key.startswith(prefix, autoescape=True))
            .order_by(cache_entry_table.c.key.asc())
        )
        return list(self.session.execute(stmt).scalars())
