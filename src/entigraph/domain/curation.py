"""Manual entity edits that fan out to every dependent rendered document."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from entigraph.domain.errors import MentionNotFoundError
from entigraph.domain.model import MergeReason
from entigraph.domain.propagation import PROPAGATION_JOB

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from entigraph.domain.events import EventBus, PipelineEvent
    from entigraph.domain.model import Entity, Mention
    from entigraph.domain.ports import (
        MaterializerFactory,
        MentionRepository,
        PipelineRepositories,
        UnitOfWorkFactory,
    )
    from entigraph.domain.propagation import PropagationEngine

log = logging.getLogger(__name__)

DOCUMENT_PAGE_SIZE = 500


class EntityCuration:
    """Applies edits, invalidates cached documents and starts propagation.

    The edit, the invalidation and the first propagation round commit in one
    unit of work; events are published afterwards.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        events: EventBus,
        propagation: PropagationEngine,
        materializer_factory: MaterializerFactory,
    ) -> None:
        self.uow_factory = uow_factory
        self.events = events
        self.propagation = propagation
        self.materializer_factory = materializer_factory

    def update_entity(self, entity_id: int, changes: Mapping[str, object]) -> Entity:
        with self.uow_factory() as uow:
            repositories = uow.repositories
            entity = repositories.entities.update_entity(entity_id, changes)
            documents = list(all_document_ids(repositories.mentions, entity_id))
            self._invalidate(repositories, documents)
            events = self.propagation.schedule_in(repositories, entity_id)
            uow.commit()

        log.info(
            "Updated entity %s (%s); %s document(s) invalidated",
            entity_id,
            ", ".join(sorted(changes)),
            len(documents),
        )
        self.events.publish_all(events)
        return entity

    def merge_entities(self, target_id: int, source_ids: Sequence[int]) -> list[int]:
        """Merge ``source_ids`` into ``target_id`` and return the affected documents."""

        events: list[PipelineEvent] = []
        with self.uow_factory() as uow:
            repositories = uow.repositories
            affected = repositories.entities.merge_entities(
                target_id, source_ids, reason=MergeReason.MANUAL
            )
            survivor = repositories.entities.canonical_id(target_id)
            self._cancel_sources(repositories, source_ids, survivor)
            self._invalidate(repositories, affected)
            events.extend(self.propagation.schedule_in(repositories, survivor))
            uow.commit()

        log.info(
            "Merged %s into entity %s; %s document(s) affected",
            list(source_ids),
            target_id,
            len(affected),
        )
        self.events.publish_all(events)
        return affected

    def delete_entity(self, entity_id: int) -> list[int]:
        with self.uow_factory() as uow:
            repositories = uow.repositories
            affected = repositories.entities.delete_entity(entity_id)
            self._cancel_sources(repositories, [entity_id], None)
            materializer = self.materializer_factory(repositories)
            for document_id in affected:
                materializer.regenerate(document_id)
            uow.commit()
        log.info("Deleted entity %s; regenerated %s document(s)", entity_id, len(affected))
        return affected

    def update_mention(
        self,
        mention_id: int,
        *,
        confidence: float | None = None,
        is_primary: bool | None = None,
    ) -> Mention:
        """Adjust one edge and regenerate the document it belongs to."""

        with self.uow_factory() as uow:
            repositories = uow.repositories
            mention = repositories.mentions.get_mention(mention_id)
            if mention is None:
                raise MentionNotFoundError(mention_id)
            if confidence is not None:
                repositories.mentions.update_confidence(mention_id, confidence)
            if is_primary is not None:
                repositories.mentions.update_primary_status(mention_id, is_primary=is_primary)
            self.materializer_factory(repositories).regenerate(mention.document_id)
            uow.commit()
        log.info("Updated mention %s of document %s", mention_id, mention.document_id)
        return mention

    def delete_mention(self, mention_id: int) -> bool:
        with self.uow_factory() as uow:
            repositories = uow.repositories
            mention = repositories.mentions.get_mention(mention_id)
            if mention is None:
                return False
            document_id = mention.document_id
            repositories.mentions.delete_mention(mention_id)
            self.materializer_factory(repositories).regenerate(document_id)
            uow.commit()
        log.info("Deleted mention %s; regenerated document %s", mention_id, document_id)
        return True

    def delete_alias(self, alias_id: int) -> bool:
        with self.uow_factory() as uow:
            deleted = uow.repositories.entities.delete_alias(alias_id)
            uow.commit()
        if deleted:
            log.info("Deleted alias %s", alias_id)
        return deleted

    def _invalidate(self, repositories: PipelineRepositories, documents: Iterable[int]) -> None:
        materializer = self.materializer_factory(repositories)
        for document_id in documents:
            materializer.invalidate(document_id)

    def _cancel_sources(
        self,
        repositories: PipelineRepositories,
        entity_ids: Iterable[int],
        survivor: int | None,
    ) -> None:
        for entity_id in entity_ids:
            if entity_id == survivor:
                continue
            repositories.cache.delete(self.propagation.marker_key(entity_id))
            repositories.tasks.unschedule_all(PROPAGATION_JOB, {"entity_id": entity_id})


def all_document_ids(mentions: MentionRepository, entity_id: int) -> Iterable[int]:
    """Page through every document id linked to ``entity_id`` in ascending order."""

    after = 0
    while True:
        page = mentions.document_ids_for_entity(entity_id, after=after, limit=DOCUMENT_PAGE_SIZE)
        yield from page
        if len(page) < DOCUMENT_PAGE_SIZE:
            return
        after = page[-1]
