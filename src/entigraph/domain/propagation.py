"""Chain-link invalidation: regenerate every document that mentions a changed entity."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import TypeAdapter

from entigraph.config.pipeline import PROPAGATION_MARKER_PREFIX, PipelineSettings
from entigraph.domain.events import EntityPropagationComplete
from entigraph.domain.model import PropagationMarker

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from entigraph.domain.events import EventBus, PipelineEvent
    from entigraph.domain.ports import (
        JsonValue,
        MaterializerFactory,
        PipelineRepositories,
        UnitOfWorkFactory,
    )

log = logging.getLogger(__name__)

PROPAGATION_JOB = "entigraph.propagate"

_MARKER_ADAPTER = TypeAdapter(PropagationMarker)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class PropagationStatus:
    entity_id: int
    is_propagating: bool
    last_document_id: int = 0
    started_at: datetime | None = None
    updated_at: datetime | None = None
    rounds: int = 0
    failures: int = 0


class PropagationEngine:
    """Per-entity state machine: not propagating, or propagating from a cursor.

    Each invocation regenerates the next batch of documents with ids above
    the cursor and re-enqueues itself. Only a round that finds no documents
    above the cursor ends the chain, so mentions added mid-flight with ids
    above the cursor are always picked up.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        events: EventBus,
        materializer_factory: MaterializerFactory,
        *,
        settings: PipelineSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.uow_factory = uow_factory
        self.events = events
        self.materializer_factory = materializer_factory
        self.settings = settings or PipelineSettings()
        self.clock = clock

    @property
    def prefix(self) -> str:
        return PROPAGATION_MARKER_PREFIX

    def marker_key(self, entity_id: int) -> str:
        return f"{self.prefix}{entity_id}"

    # Scheduling ---------------------------------------------------------------

    def schedule(self, entity_id: int, last_document_id: int = 0) -> bool:
        """Start propagation for ``entity_id``; returns whether a round was queued."""

        with self.uow_factory() as uow:
            events = self.schedule_in(uow.repositories, entity_id, last_document_id)
            uow.commit()
        self.events.publish_all(events)
        return not events

    def schedule_in(
        self,
        repositories: PipelineRepositories,
        entity_id: int,
        last_document_id: int = 0,
    ) -> list[PipelineEvent]:
        """Queue the first round inside an open unit of work.

        Returns the completion event when there is nothing to propagate.
        """

        remaining = repositories.mentions.count_documents_for_entity(
            entity_id, after=last_document_id
        )
        if remaining == 0:
            repositories.cache.delete(self.marker_key(entity_id))
            log.info("Entity %s has no documents to propagate to", entity_id)
            return [EntityPropagationComplete(entity_id=entity_id, rounds=0, failures=0)]

        now = self.clock()
        marker = PropagationMarker(
            entity_id=entity_id,
            started_at=now,
            last_document_id=last_document_id,
            updated_at=now,
        )
        self._save_marker(repositories, marker)
        repositories.tasks.unschedule_all(PROPAGATION_JOB, {"entity_id": entity_id})
        self._enqueue(repositories, marker)
        log.info("Scheduled propagation for entity %s (%s documents)", entity_id, remaining)
        return []

    # Execution ----------------------------------------------------------------

    def handle(self, args: Mapping[str, JsonValue]) -> None:
        entity_id = args.get("entity_id")
        cursor = args.get("last_document_id")
        if not isinstance(entity_id, int):
            raise ValueError(f"Propagation task without an entity id: {dict(args)}")
        self.execute(entity_id, cursor if isinstance(cursor, int) else None)

    def execute(
        self,
        entity_id: int,
        last_document_id: int | None = None,
    ) -> PropagationMarker | None:
        """Run one round; returns the marker after the round, or ``None`` if inactive."""

        events: list[PipelineEvent] = []
        with self.uow_factory() as uow:
            repositories = uow.repositories
            marker = self._load_marker(repositories, entity_id)
            if marker is None:
                log.info("Propagation for entity %s is not active; skipping round", entity_id)
                return None
            cursor = marker.last_document_id if last_document_id is None else last_document_id
            batch_size = self.settings.propagation_batch_size
            document_ids = repositories.mentions.document_ids_for_entity(
                entity_id, after=cursor, limit=batch_size
            )

            if not document_ids:
                repositories.cache.delete(self.marker_key(entity_id))
                events.append(
                    EntityPropagationComplete(
                        entity_id=entity_id, rounds=marker.rounds, failures=marker.failures
                    )
                )
                log.info(
                    "Propagation for entity %s complete after %s round(s), %s failure(s)",
                    entity_id,
                    marker.rounds,
                    marker.failures,
                )
            else:
                materializer = self.materializer_factory(repositories)
                for document_id in document_ids:
                    try:
                        with repositories.savepoint():
                            materializer.regenerate(document_id)
                    except Exception as exc:
                        marker.failures += 1
                        log.warning(
                            "Regenerating document %s for entity %s failed: %s",
                            document_id,
                            entity_id,
                            exc,
                        )
                marker.last_document_id = max(document_ids)
                marker.rounds += 1
                marker.updated_at = self.clock()
                log.debug(
                    "Propagation round %s for entity %s reached document %s",
                    marker.rounds,
                    entity_id,
                    marker.last_document_id,
                )
                self._save_marker(repositories, marker)
                self._enqueue(repositories, marker)
            uow.commit()

        self.events.publish_all(events)
        return marker

    # Inspection ---------------------------------------------------------------

    def is_propagating(self, entity_id: int) -> bool:
        with self.uow_factory() as uow:
            return self._load_marker(uow.repositories, entity_id) is not None

    def status(self, entity_id: int) -> PropagationStatus:
        with self.uow_factory() as uow:
            marker = self._load_marker(uow.repositories, entity_id)
        if marker is None:
            return PropagationStatus(entity_id=entity_id, is_propagating=False)
        return PropagationStatus(
            entity_id=entity_id,
            is_propagating=True,
            last_document_id=marker.last_document_id,
            started_at=marker.started_at,
            updated_at=marker.updated_at,
            rounds=marker.rounds,
            failures=marker.failures,
        )

    def remaining(self, entity_id: int) -> int:
        """Documents still ahead of the cursor (all documents when inactive)."""

        with self.uow_factory() as uow:
            repositories = uow.repositories
            marker = self._load_marker(repositories, entity_id)
            after = marker.last_document_id if marker is not None else 0
            return repositories.mentions.count_documents_for_entity(entity_id, after=after)

    def propagating_entities(self) -> list[int]:
        with self.uow_factory() as uow:
            return self.propagating_in(uow.repositories)

    def propagating_in(self, repositories: PipelineRepositories) -> list[int]:
        entity_ids: list[int] = []
        for key in repositories.cache.keys_with_prefix(self.prefix):
            suffix = key.removeprefix(self.prefix)
            if suffix.isdigit():
                entity_ids.append(int(suffix))
        return sorted(entity_ids)

    def cancel(self, entity_id: int) -> bool:
        """Clear the marker and drop pending rounds; returns whether anything was active."""

        with self.uow_factory() as uow:
            repositories = uow.repositories
            was_active = self._load_marker(repositories, entity_id) is not None
            repositories.cache.delete(self.marker_key(entity_id))
            removed = repositories.tasks.unschedule_all(PROPAGATION_JOB, {"entity_id": entity_id})
            uow.commit()
        log.info("Cancelled propagation for entity %s (%s pending round(s))", entity_id, removed)
        return was_active or removed > 0

    # Helpers ------------------------------------------------------------------

    def _load_marker(
        self,
        repositories: PipelineRepositories,
        entity_id: int,
    ) -> PropagationMarker | None:
        raw = repositories.cache.get(self.marker_key(entity_id))
        if raw is None:
            return None
        return _MARKER_ADAPTER.validate_python(raw)

    def _save_marker(self, repositories: PipelineRepositories, marker: PropagationMarker) -> None:
        repositories.cache.set_with_ttl(
            self.marker_key(marker.entity_id),
            _MARKER_ADAPTER.dump_python(marker, mode="json"),
            self.settings.propagation_ttl_seconds,
        )

    def _enqueue(self, repositories: PipelineRepositories, marker: PropagationMarker) -> None:
        repositories.tasks.schedule(
            PROPAGATION_JOB,
            {"entity_id": marker.entity_id, "last_document_id": marker.last_document_id},
            when=self.clock(),
            group=self.settings.queue_group,
        )
