"""Repository implementations backed by SQLAlchemy sessions."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING, cast

from sqlalchemy import delete, func, inspect, or_, select, text, update
from sqlalchemy.exc import IntegrityError

from entigraph.adapters.sqlalchemy.mappings import (
    alias_table,
    document_table,
    entity_merge_table,
    entity_table,
    mention_table,
)
from entigraph.config.pipeline import MAX_CONTEXT_LENGTH
from entigraph.domain.errors import EntityNotFoundError, InvalidEntityUpdateError
from entigraph.domain.model import (
    HIDDEN_STATUSES,
    PUBLISHED,
    Alias,
    AliasSource,
    Document,
    Entity,
    EntityMention,
    EntityMerge,
    EntityStatus,
    EntityType,
    Mention,
    MergeReason,
    RenderedDocument,
    clamp_confidence,
)
from entigraph.domain.ports import ConfidenceStats, EntityPage, IndexStatistics
from entigraph.domain.text import slugify

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from sqlalchemy.orm import Session

log = logging.getLogger(__name__)

UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {"name", "type", "schema_type", "description", "same_as", "wikidata_id", "status"}
)
ORDERABLE_FIELDS: dict[str, str] = {
    "id": "id",
    "name": "name",
    "type": "type",
    "status": "status",
    "mention_count": "mention_count",
    "created_at": "created_at",
    "updated_at": "updated_at",
}
WIKIDATA_ID_PATTERN = re.compile(r"^Q[0-9]+$")
EXPECTED_MENTION_INDEXES: tuple[str, ...] = (
    "ix_entity_mention_document_id",
    "ix_entity_mention_confidence",
)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class SqlAlchemyCanonicalStore:
    """Canonical Store over the ``entity``, ``entity_alias`` and ``entity_mention`` tables."""

    def __init__(self, session: Session, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.session = session
        self._clock = clock

    # Resolution ---------------------------------------------------------------

    def upsert_entity(
        self,
        name: str,
        entity_type: EntityType,
        aliases: Sequence[str] = (),
    ) -> int:
        clean_name = " ".join(name.split())
        slug = slugify(clean_name)
        if not slug:
            raise ValueError(f"Cannot derive a slug from entity name {name!r}")

        existing_id = self.resolve_alias(slug) or self.find_entity_id_by_slug(slug)
        if existing_id is not None:
            return existing_id

        now = self._clock()
        entity = Entity(
            name=clean_name,
            slug=slug,
            type=EntityType.coerce(entity_type),
            created_at=now,
            updated_at=now,
        )
        try:
            with self.session.begin_nested():
                self.session.add(entity)
        except IntegrityError:
            winner = self.find_entity_id_by_slug(slug)
            if winner is None:
                raise
            log.debug("Entity slug %r inserted concurrently; reusing id %s", slug, winner)
            return winner

        entity_id = entity.require_id()
        for alias in aliases:
            self.register_alias(entity_id, alias)
        return entity_id

    def resolve_alias(self, slug: str) -> int | None:
        alias_slug = slugify(slug)
        if not alias_slug:
            return None
        stmt = select(alias_table.c.entity_id).where(alias_table.c.alias_slug == alias_slug)
        entity_id = self.session.execute(stmt).scalar_one_or_none()
        if entity_id is None:
            return None
        return self.canonical_id(entity_id)

    def find_entity_id_by_slug(self, slug: str) -> int | None:
        stmt = select(entity_table.c.id).where(entity_table.c.slug == slug)
        return self.session.execute(stmt).scalar_one_or_none()

    def register_alias(
        self,
        entity_id: int,
        alias: str,
        *,
        source: AliasSource | None = None,
    ) -> bool:
        clean_alias = " ".join(alias.split())
        alias_slug = slugify(clean_alias)
        if not alias_slug:
            return False
        exists = select(alias_table.c.id).where(alias_table.c.alias_slug == alias_slug)
        if self.session.execute(exists).first() is not None:
            return False
        record = Alias(
            entity_id=entity_id,
            alias=clean_alias,
            alias_slug=alias_slug,
            source=source or AliasSource.MACHINE,
            created_at=self._clock(),
        )
        try:
            with self.session.begin_nested():
                self.session.add(record)
        except IntegrityError:
            return False
        return True

    def canonical_id(self, entity_id: int) -> int:
        """Follow merge records to the surviving entity, compressing the path."""

        visited: list[int] = []
        current = entity_id
        while True:
            stmt = select(entity_merge_table.c.target_id).where(
                entity_merge_table.c.source_id == current
            )
            target = self.session.execute(stmt).scalar_one_or_none()
            if target is None or target in visited:
                break
            visited.append(current)
            current = target
        if len(visited) > 1:
            self.session.execute(
                update(EntityMerge)
                .where(entity_merge_table.c.source_id.in_(visited))
                .values(target_id=current)
            )
        return current

    # Edges --------------------------------------------------------------------

    def link_mention(
        self,
        entity_id: int,
        document_id: int,
        confidence: float,
        context: str = "",
        *,
        is_primary: bool = False,
    ) -> Mention:
        canonical = self.canonical_id(entity_id)
        score = clamp_confidence(confidence)
        snippet = (context or "")[:MAX_CONTEXT_LENGTH]

        mention = self._find_mention(canonical, document_id)
        if mention is None:
            mention = Mention(
                entity_id=canonical,
                document_id=document_id,
                confidence=score,
                context=snippet,
                is_primary=is_primary,
                created_at=self._clock(),
            )
            try:
                with self.session.begin_nested():
                    self.session.add(mention)
            except IntegrityError:
                mention = self._find_mention(canonical, document_id)
                if mention is None:
                    raise
                self._merge_into(mention, score, snippet, is_primary=is_primary)
        else:
            self._merge_into(mention, score, snippet, is_primary=is_primary)

        self.session.flush()
        self._refresh_mention_count(canonical)
        return mention

    def get_entities_for_post(
        self,
        document_id: int,
        min_confidence: float = 0.6,
    ) -> list[EntityMention]:
        stmt = (
            select(Entity, Mention)
            .join(mention_table, mention_table.c.entity_id == entity_table.c.id)
            .where(mention_table.c.document_id == document_id)
            .where(mention_table.c.confidence >= min_confidence)
            .where(entity_table.c.status.not_in(list(HIDDEN_STATUSES)))
            .order_by(mention_table.c.is_primary.desc(), mention_table.c.confidence.desc())
        )
        return [
            EntityMention(
                entity=entity,
                document_id=mention.document_id,
                confidence=mention.confidence,
                context=mention.context,
                is_primary=mention.is_primary,
            )
            for entity, mention in self.session.execute(stmt).tuples()
        ]

    def merge_entities(
        self,
        target_id: int,
        source_ids: Sequence[int],
        *,
        reason: MergeReason | None = None,
    ) -> list[int]:
        target_id = self.canonical_id(target_id)
        target = self.session.get(Entity, target_id)
        if target is None:
            raise EntityNotFoundError(target_id)

        target_mentions = {
            mention.document_id: mention
            for mention in self._mentions_of(target_id)
        }
        affected: set[int] = set(target_mentions)

        for raw_source_id in source_ids:
            source_id = self.canonical_id(raw_source_id)
            if source_id == target_id:
                continue
            source = self.session.get(Entity, source_id)
            if source is None:
                log.warning("Skipping merge of missing entity %s into %s", source_id, target_id)
                continue

            for mention in self._mentions_of(source_id):
                affected.add(mention.document_id)
                existing = target_mentions.get(mention.document_id)
                if existing is None:
                    mention.entity_id = target_id
                    target_mentions[mention.document_id] = mention
                    continue
                self._merge_into(
                    existing,
                    mention.confidence,
                    mention.context,
                    is_primary=existing.is_primary or mention.is_primary,
                )
                self.session.delete(mention)
            self.session.flush()

            self.session.execute(
                update(Alias)
                .where(alias_table.c.entity_id == source_id)
                .values(entity_id=target_id)
            )
            self.session.execute(
                update(EntityMerge)
                .where(entity_merge_table.c.target_id == source_id)
                .values(target_id=target_id)
            )
            self.session.add(
                EntityMerge(
                    source_id=source_id,
                    target_id=target_id,
                    reason=reason or MergeReason.MANUAL,
                    source_name=source.name,
                    created_at=self._clock(),
                )
            )
            source_name = source.name
            self.session.delete(source)
            self.session.flush()
            self.register_alias(target_id, source_name)
            log.info("Merged entity %s (%s) into %s", source_id, source_name, target_id)

        target.touch()
        self._refresh_mention_count(target_id)
        return sorted(affected)

    # Administration -----------------------------------------------------------

    def get_entity(self, entity_id: int) -> Entity | None:
        return self.session.get(Entity, entity_id)

    def list_entities(
        self,
        *,
        page: int = 1,
        per_page: int = 20,
        entity_type: EntityType | None = None,
        status: EntityStatus | None = None,
        search: str | None = None,
        order_by: str = "mention_count",
        descending: bool = True,
    ) -> EntityPage:
        page = max(page, 1)
        per_page = max(min(per_page, 100), 1)
        conditions = []
        if entity_type is not None:
            conditions.append(entity_table.c.type == entity_type)
        if status is not None:
            conditions.append(entity_table.c.status == status)
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(
                or_(entity_table.c.name.ilike(pattern), entity_table.c.slug.ilike(pattern))
            )

        column = entity_table.c[ORDERABLE_FIELDS.get(order_by, "mention_count")]
        ordering = column.desc() if descending else column.asc()
        stmt = (
            select(Entity)
            .where(*conditions)
            .order_by(ordering, entity_table.c.id.asc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        total_stmt = select(func.count()).select_from(entity_table).where(*conditions)
        items = list(self.session.execute(stmt).scalars())
        total = self.session.execute(total_stmt).scalar_one()
        return EntityPage(items=items, total=total, page=page, per_page=per_page)

    def update_entity(self, entity_id: int, changes: Mapping[str, object]) -> Entity:
        entity = self.session.get(Entity, entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            fields = ", ".join(sorted(unknown))
            raise InvalidEntityUpdateError(f"Unsupported entity fields: {fields}")

        for field_name, value in changes.items():
            if field_name == "name":
                self._rename(entity, str(value))
            elif field_name == "type":
                entity.type = _parse_enum(EntityType, str(value).upper(), field_name)
            elif field_name == "status":
                entity.status = _parse_enum(EntityStatus, str(value).lower(), field_name)
            elif field_name == "wikidata_id":
                entity.wikidata_id = _validate_wikidata_id(value)
            else:
                setattr(entity, field_name, None if value in (None, "") else str(value))
        entity.touch()
        self.session.flush()
        return entity

    def delete_entity(self, entity_id: int) -> list[int]:
        entity = self.session.get(Entity, entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        documents = sorted(mention.document_id for mention in self._mentions_of(entity_id))
        self.session.execute(delete(Mention).where(mention_table.c.entity_id == entity_id))
        self.session.execute(delete(Alias).where(alias_table.c.entity_id == entity_id))
        self.session.delete(entity)
        self.session.flush()
        return documents

    def get_aliases(self, entity_id: int) -> list[Alias]:
        stmt = (
            select(Alias)
            .where(alias_table.c.entity_id == entity_id)
            .order_by(alias_table.c.alias.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def delete_alias(self, alias_id: int) -> bool:
        result = self.session.execute(delete(Alias).where(alias_table.c.id == alias_id))
        return bool(result.rowcount)  # pyright: ignore[reportAttributeAccessIssue]

    def entity_ids_after(self, last_id: int, limit: int) -> list[int]:
        stmt = (
            select(entity_table.c.id)
            .where(entity_table.c.id > last_id)
            .order_by(entity_table.c.id.asc())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def count_entities(self) -> int:
        return self.session.execute(select(func.count()).select_from(entity_table)).scalar_one()

    # Helpers ------------------------------------------------------------------

    def _find_mention(self, entity_id: int, document_id: int) -> Mention | None:
        stmt = (
            select(Mention)
            .where(mention_table.c.entity_id == entity_id)
            .where(mention_table.c.document_id == document_id)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def _mentions_of(self, entity_id: int) -> list[Mention]:
        stmt = select(Mention).where(mention_table.c.entity_id == entity_id)
        return list(self.session.execute(stmt).scalars())

    @staticmethod
    def _merge_into(mention: Mention, confidence: float, context: str, *, is_primary: bool) -> None:
        if confidence > mention.confidence:
            mention.context = context
            mention.confidence = confidence
        mention.is_primary = is_primary

    def _refresh_mention_count(self, entity_id: int) -> int:
        return _recount(self.session, entity_id)

    def _rename(self, entity: Entity, name: str) -> None:
        clean_name = " ".join(name.split())
        slug = slugify(clean_name)
        if not slug:
            raise InvalidEntityUpdateError("Entity name must not be empty")
        if slug == entity.slug:
            entity.name = clean_name
            return
        owner = self.find_entity_id_by_slug(slug)
        if owner is not None and owner != entity.id:
            raise InvalidEntityUpdateError(f"Slug {slug!r} already belongs to entity {owner}")
        previous_name = entity.name
        entity.name = clean_name
        entity.slug = slug
        self.session.flush()
        self.register_alias(entity.require_id(), previous_name, source=AliasSource.MANUAL)


class SqlAlchemyMentionRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_mention(self, mention_id: int) -> Mention | None:
        return self.session.get(Mention, mention_id)

    def get_mentions_for_document(self, document_id: int) -> list[Mention]:
        stmt = (
            select(Mention)
            .where(mention_table.c.document_id == document_id)
            .order_by(mention_table.c.is_primary.desc(), mention_table.c.confidence.desc())
        )
        return list(self.session.execute(stmt).scalars())

    def get_mentions_for_entity(self, entity_id: int, *, limit: int = 100) -> list[Mention]:
        stmt = (
            select(Mention)
            .where(mention_table.c.entity_id == entity_id)
            .order_by(mention_table.c.confidence.desc(), mention_table.c.document_id.asc())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def delete_mentions_for_document(self, document_id: int) -> list[int]:
        stmt = select(mention_table.c.entity_id).where(mention_table.c.document_id == document_id)
        entity_ids = sorted(set(self.session.execute(stmt).scalars()))
        self.session.execute(delete(Mention).where(mention_table.c.document_id == document_id))
        for entity_id in entity_ids:
            _recount(self.session, entity_id)
        return entity_ids

    def update_confidence(self, mention_id: int, confidence: float) -> bool:
        mention = self.session.get(Mention, mention_id)
        if mention is None:
            return False
        mention.confidence = clamp_confidence(confidence)
        return True

    def update_primary_status(self, mention_id: int, *, is_primary: bool) -> bool:
        mention = self.session.get(Mention, mention_id)
        if mention is None:
            return False
        mention.is_primary = is_primary
        return True

    def delete_mention(self, mention_id: int) -> bool:
        mention = self.session.get(Mention, mention_id)
        if mention is None:
            return False
        entity_id = mention.entity_id
        self.session.delete(mention)
        self.session.flush()
        _recount(self.session, entity_id)
        return True

    def get_low_confidence_mentions(
        self,
        threshold: float = 0.6,
        *,
        limit: int = 100,
    ) -> list[Mention]:
        stmt = (
            select(Mention)
            .where(mention_table.c.confidence < threshold)
            .order_by(mention_table.c.confidence.asc(), mention_table.c.id.asc())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def mention_counts_by_type(self) -> dict[str, int]:
        stmt = (
            select(entity_table.c.type, func.count(mention_table.c.id))
            .join(mention_table, mention_table.c.entity_id == entity_table.c.id)
            .group_by(entity_table.c.type)
        )
        return {str(entity_type): count for entity_type, count in self.session.execute(stmt)}

    def recount_mentions(self, entity_id: int) -> int:
        return _recount(self.session, entity_id)

    def recalculate_all_mention_counts(self) -> int:
        counts = (
            select(func.count(mention_table.c.id))
            .where(mention_table.c.entity_id == entity_table.c.id)
            .scalar_subquery()
        )
        result = self.session.execute(
            entity_table.update().values(mention_count=counts),
            execution_options={"synchronize_session": False},
        )
        self.session.expire_all()
        return int(result.rowcount or 0)  # pyright: ignore[reportAttributeAccessIssue]

    def document_ids_for_entity(self, entity_id: int, *, after: int, limit: int) -> list[int]:
        stmt = (
            select(mention_table.c.document_id)
            .where(mention_table.c.entity_id == entity_id)
            .where(mention_table.c.document_id > after)
            .distinct()
            .order_by(mention_table.c.document_id.asc())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def count_documents_for_entity(self, entity_id: int, *, after: int = 0) -> int:
        stmt = (
            select(func.count(func.distinct(mention_table.c.document_id)))
            .where(mention_table.c.entity_id == entity_id)
            .where(mention_table.c.document_id > after)
        )
        return self.session.execute(stmt).scalar_one()

    def document_ids_with_mentions(self, min_confidence: float) -> list[int]:
        stmt = (
            select(mention_table.c.document_id)
            .where(mention_table.c.confidence >= min_confidence)
            .distinct()
            .order_by(mention_table.c.document_id.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def statistics(self, *, top: int = 10) -> IndexStatistics:
        total_entities = self.session.execute(
            select(func.count()).select_from(entity_table)
        ).scalar_one()
        by_type = self.session.execute(
            select(entity_table.c.type, func.count()).group_by(entity_table.c.type)
        )
        average, minimum, maximum, total = self.session.execute(
            select(
                func.avg(mention_table.c.confidence),
                func.min(mention_table.c.confidence),
                func.max(mention_table.c.confidence),
                func.count(mention_table.c.id),
            )
        ).one()
        top_entities = self.session.execute(
            select(entity_table.c.id, entity_table.c.name, entity_table.c.mention_count)
            .order_by(entity_table.c.mention_count.desc(), entity_table.c.id.asc())
            .limit(top)
        )
        mention_count = func.count(mention_table.c.id).label("mentions")
        top_documents = self.session.execute(
            select(mention_table.c.document_id, mention_count)
            .group_by(mention_table.c.document_id)
            .order_by(mention_count.desc(), mention_table.c.document_id.asc())
            .limit(top)
        )
        return IndexStatistics(
            total_entities=total_entities,
            total_mentions=total,
            type_distribution={str(entity_type): count for entity_type, count in by_type},
            confidence=ConfidenceStats(
                average=round(float(average or 0.0), 4),
                minimum=float(minimum or 0.0),
                maximum=float(maximum or 0.0),
                total=total,
            ),
            top_entities=[(row[0], row[1], row[2]) for row in top_entities],
            top_documents=[(row[0], row[1]) for row in top_documents],
        )

    def maintain_indexes(self) -> list[str]:
        """Recreate missing mention indexes and refresh planner statistics."""

        connection = self.session.connection()
        present = {index["name"] for index in inspect(connection).get_indexes("entity_mention")}
        actions: list[str] = []
        for index in mention_table.indexes:
            if index.name in EXPECTED_MENTION_INDEXES and index.name not in present:
                index.create(bind=connection)
                actions.append(f"created {index.name}")

        dialect = connection.dialect.name
        if dialect in {"sqlite", "postgresql"}:
            self.session.execute(text("ANALYZE"))
            actions.append("analyze")
        elif dialect in {"mysql", "mariadb"}:
            self.session.execute(text("ANALYZE TABLE entity, entity_alias, entity_mention"))
            actions.append("analyze")
        return actions


class SqlAlchemyDocumentRepository:
    """Content source backed by the ``document`` table."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_eligible_documents(
        self,
        type_filter: Sequence[str],
        *,
        force_reprocess: bool = False,
    ) -> list[int]:
        stmt = (
            select(document_table.c.id)
            .where(document_table.c.status == PUBLISHED)
            .where(document_table.c.content_type.in_(list(type_filter)))
            .order_by(document_table.c.id.asc())
        )
        if not force_reprocess:
            stmt = stmt.where(document_table.c.extracted_at.is_(None))
        return list(self.session.execute(stmt).scalars())

    def get_document(self, document_id: int) -> Document | None:
        return self.session.get(Document, document_id)

    def mark_extracted(self, document_id: int, at: datetime) -> None:
        self.session.execute(
            update(Document).where(document_table.c.id == document_id).values(extracted_at=at)
        )

    def add(self, document: Document) -> None:
        self.session.merge(document)


class SqlAlchemyRenderedDocumentRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, document_id: int) -> RenderedDocument | None:
        return self.session.get(RenderedDocument, document_id)

    def save(self, rendered: RenderedDocument) -> None:
        self.session.merge(rendered)
        self.session.flush()

    def delete(self, document_id: int) -> bool:
        rendered = self.session.get(RenderedDocument, document_id)
        if rendered is None:
            return False
        self.session.delete(rendered)
        self.session.flush()
        return True


def _recount(session: Session, entity_id: int) -> int:
    count = session.execute(
        select(func.count())
        .select_from(mention_table)
        .where(mention_table.c.entity_id == entity_id)
    ).scalar_one()
    entity = session.get(Entity, entity_id)
    if entity is not None:
        entity.mention_count = count
    return count


def _parse_enum[TEnum: (EntityType, EntityStatus)](
    enum_cls: type[TEnum],
    value: str,
    field_name: str,
) -> TEnum:
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise InvalidEntityUpdateError(f"Invalid {field_name}: {value!r}") from exc


def _validate_wikidata_id(value: object) -> str | None:
    if value in (None, ""):
        return None
    candidate = str(value).strip().upper()
    if not WIKIDATA_ID_PATTERN.match(candidate):
        raise InvalidEntityUpdateError(f"Invalid Wikidata id: {value!r}")
    return cast(str, candidate)
