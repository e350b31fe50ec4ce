"""Application orchestration entry points."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING, Any

from entigraph.adapters.extraction import HttpEntityExtractor
from entigraph.adapters.materialization import materializer_factory as build_materializer_factory
from entigraph.adapters.sqlalchemy.unit_of_work import SqlAlchemyUnitOfWork, is_started, startup
from entigraph.config.pipeline import PipelineSettings, get_pipeline_settings
from entigraph.domain.curation import EntityCuration
from entigraph.domain.events import EventBus
from entigraph.domain.model import Document, PipelineConfig
from entigraph.domain.pipeline import (
    DeduplicationJob,
    ExtractionJob,
    IndexingJob,
    LinkingJob,
    MaterializationJob,
    PipelineOrchestrator,
    PreparationJob,
    Worker,
)
from entigraph.domain.propagation import PROPAGATION_JOB, PropagationEngine

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence
    from pathlib import Path

    from entigraph.domain.model import EntityStatus, EntityType, Mention
    from entigraph.domain.pipeline import JobHandler, PhaseJob, PipelineStatusReport
    from entigraph.domain.ports import (
        EntityPage,
        ExtractionService,
        MaterializerFactory,
        UnitOfWorkFactory,
    )

log = getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True)
class PipelineServices:
    """Domain services sharing one event bus and one unit-of-work factory."""

    uow_factory: UnitOfWorkFactory
    settings: PipelineSettings
    events: EventBus
    orchestrator: PipelineOrchestrator
    propagation: PropagationEngine
    curation: EntityCuration
    jobs: list[PhaseJob] = field(default_factory=list)
    extractor: ExtractionService | None = None

    @property
    def handlers(self) -> dict[str, JobHandler]:
        handlers: dict[str, JobHandler] = {job.name: job for job in self.jobs}
        handlers[PROPAGATION_JOB] = self.propagation.handle
        return handlers

    def worker(self) -> Worker:
        return Worker(self.uow_factory, self.handlers, retry=self.settings.retry)

    def close(self) -> None:
        if isinstance(self.extractor, HttpEntityExtractor):
            self.extractor.close()


def build_services(
    *,
    uow_factory: UnitOfWorkFactory | None = None,
    extractor: ExtractionService | None = None,
    materializer_factory: MaterializerFactory | None = None,
    settings: PipelineSettings | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> PipelineServices:
    """Wire the pipeline against the configured adapters (or the given overrides)."""

    if uow_factory is None:
        if not is_started():
            startup()
        uow_factory = SqlAlchemyUnitOfWork
    effective_settings = settings or get_pipeline_settings()
    effective_materializer = materializer_factory or build_materializer_factory(
        site_url=effective_settings.site_url,
        min_confidence=effective_settings.confidence.materialization_minimum,
    )
    events = EventBus()

    propagation = PropagationEngine(
        uow_factory, events, effective_materializer, settings=effective_settings, clock=clock
    )
    orchestrator = PipelineOrchestrator(
        uow_factory,
        events,
        settings=effective_settings,
        clock=clock,
        propagating=propagation.propagating_in,
    )
    common: dict[str, Any] = {"settings": effective_settings, "clock": clock}
    effective_extractor = extractor or HttpEntityExtractor()
    jobs: list[PhaseJob] = [
        PreparationJob(uow_factory, events, **common),
        ExtractionJob(uow_factory, events, effective_extractor, **common),
        DeduplicationJob(uow_factory, events, **common),
        LinkingJob(uow_factory, events, **common),
        IndexingJob(uow_factory, events, **common),
        MaterializationJob(uow_factory, events, effective_materializer, **common),
    ]
    curation = EntityCuration(uow_factory, events, propagation, effective_materializer)
    return PipelineServices(
        uow_factory=uow_factory,
        settings=effective_settings,
        events=events,
        orchestrator=orchestrator,
        propagation=propagation,
        curation=curation,
        jobs=jobs,
        extractor=effective_extractor,
    )


# Documents --------------------------------------------------------------------


def parse_document(row: Mapping[str, Any]) -> Document:
    """Build a document from one JSON object; ``id``, ``title`` and ``body`` are required."""

    missing = [name for name in ("id", "title", "body") if name not in row]
    if missing:
        raise ValueError(f"Document is missing field(s): {', '.join(missing)}")
    document = Document(
        id=int(row["id"]),
        title=str(row["title"]),
        body=str(row["body"]),
    )
    if row.get("content_type"):
        document.content_type = str(row["content_type"])
    if row.get("status"):
        document.status = str(row["status"])
    if row.get("url"):
        document.url = str(row["url"])
    if row.get("updated_at"):
        document.updated_at = datetime.fromisoformat(str(row["updated_at"]))
    return document


def import_documents(
    rows: Iterable[Mapping[str, Any]],
    *,
    unit_of_work_factory: UnitOfWorkFactory | None = None,
) -> int:
    if unit_of_work_factory is None:
        if not is_started():
            startup()
        unit_of_work_factory = SqlAlchemyUnitOfWork
    imported = 0
    with unit_of_work_factory() as uow:
        for row in rows:
            uow.repositories.documents.add(parse_document(row))
            imported += 1
        uow.commit()
    log.info("Imported %s document(s)", imported)
    return imported


def read_documents(path: Path) -> list[dict[str, Any]]:
    """Read a JSON Lines file, skipping blank lines."""

    rows: list[dict[str, Any]] = []
    with path.open(encoding="utf-8") as handle:
        for number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                value = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"{path}:{number}: invalid JSON ({exc.msg})") from exc
            if not isinstance(value, dict):
                raise ValueError(f"{path}:{number}: expected a JSON object")
            rows.append(value)
    return rows


# Pipeline ---------------------------------------------------------------------


def start_pipeline(
    *,
    content_types: Sequence[str] | None = None,
    batch_size: int | None = None,
    force_reprocess: bool = False,
    started_by: str | None = None,
    services: PipelineServices | None = None,
) -> PipelineConfig:
    effective = services or build_services()
    config = PipelineConfig(
        content_types=tuple(content_types or effective.settings.content_types),
        batch_size=batch_size or effective.settings.batch_size,
        force_reprocess=force_reprocess,
        started_by=started_by,
    )
    state = effective.orchestrator.start(config)
    return state.config or config


def stop_pipeline(*, services: PipelineServices | None = None) -> None:
    (services or build_services()).orchestrator.stop()


def pipeline_status(*, services: PipelineServices | None = None) -> PipelineStatusReport:
    return (services or build_services()).orchestrator.status()


def run_worker(
    *,
    once: bool = False,
    poll_interval: float = 1.0,
    services: PipelineServices | None = None,
) -> int:
    worker = (services or build_services()).worker()
    if once:
        return worker.run_forever(stop_when_idle=True)
    return worker.run_forever(poll_interval=poll_interval)


# Entities ---------------------------------------------------------------------


def propagate_entity(entity_id: int, *, services: PipelineServices | None = None) -> bool:
    return (services or build_services()).propagation.schedule(entity_id)


def cancel_propagation(entity_id: int, *, services: PipelineServices | None = None) -> bool:
    return (services or build_services()).propagation.cancel(entity_id)


def merge_entities(
    target_id: int,
    source_ids: Sequence[int],
    *,
    services: PipelineServices | None = None,
) -> list[int]:
    if not source_ids:
        raise ValueError("At least one source entity is required")
    if target_id in source_ids:
        raise ValueError("An entity cannot be merged into itself")
    return (services or build_services()).curation.merge_entities(target_id, source_ids)


def list_entities(
    *,
    entity_type: EntityType | None = None,
    status: EntityStatus | None = None,
    search: str | None = None,
    page: int = 1,
    per_page: int = 20,
    services: PipelineServices | None = None,
) -> EntityPage:
    effective = services or build_services()
    with effective.uow_factory() as uow:
        return uow.repositories.entities.list_entities(
            page=page,
            per_page=per_page,
            entity_type=entity_type,
            status=status,
            search=search,
        )


def entity_mentions(
    entity_id: int,
    *,
    limit: int = 100,
    services: PipelineServices | None = None,
) -> list[Mention]:
    effective = services or build_services()
    with effective.uow_factory() as uow:
        return uow.repositories.mentions.get_mentions_for_entity(entity_id, limit=limit)


def mention_counts(*, services: PipelineServices | None = None) -> dict[str, int]:
    """Mention totals grouped by entity type."""

    effective = services or build_services()
    with effective.uow_factory() as uow:
        return uow.repositories.mentions.mention_counts_by_type()


def update_mention(
    mention_id: int,
    *,
    confidence: float | None = None,
    is_primary: bool | None = None,
    services: PipelineServices | None = None,
) -> Mention:
    if confidence is None and is_primary is None:
        raise ValueError("Nothing to update: pass a confidence or a primary flag")
    return (services or build_services()).curation.update_mention(
        mention_id, confidence=confidence, is_primary=is_primary
    )


def delete_mention(mention_id: int, *, services: PipelineServices | None = None) -> bool:
    return (services or build_services()).curation.delete_mention(mention_id)


def delete_alias(alias_id: int, *, services: PipelineServices | None = None) -> bool:
    return (services or build_services()).curation.delete_alias(alias_id)
