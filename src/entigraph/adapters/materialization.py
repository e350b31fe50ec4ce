"""Render schema.org JSON-LD for documents and cache one rendering per document."""

from __future__ import annotations

from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING, Any

from entigraph.config.pipeline import DEFAULT_SITE_URL
from entigraph.domain.model import EntityType, RenderedDocument

if TYPE_CHECKING:
    from collections.abc import Callable

    from entigraph.domain.model import Document, Entity, EntityMention
    from entigraph.domain.ports import MaterializationService, PipelineRepositories

log = getLogger(__name__)

SCHEMA_CONTEXT = "https://schema.org"
WIKIDATA_URL = "https://www.wikidata.org/wiki/"
DEFAULT_MIN_CONFIDENCE = 0.6

TYPE_MAPPING: dict[EntityType, str] = {
    EntityType.PERSON: "Person",
    EntityType.ORG: "Organization",
    EntityType.COMPANY: "Corporation",
    EntityType.LOCATION: "Place",
    EntityType.COUNTRY: "Country",
    EntityType.PRODUCT: "Product",
    EntityType.SOFTWARE: "SoftwareApplication",
    EntityType.EVENT: "Event",
    EntityType.WORK: "CreativeWork",
    EntityType.CONCEPT: "Thing",
}

ARTICLE_TYPES: dict[str, str] = {"post": "Article", "page": "WebPage"}


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def schema_type_for(entity: Entity) -> str:
    if entity.schema_type:
        return entity.schema_type
    return TYPE_MAPPING.get(entity.type, "Thing")


class JsonLdMaterializer:
    """Materialization service backed by the rendered-document repository."""

    def __init__(
        self,
        repositories: PipelineRepositories,
        *,
        site_url: str = DEFAULT_SITE_URL,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repositories = repositories
        self.site_url = site_url.rstrip("/")
        self.min_confidence = min_confidence
        self.clock = clock

    def regenerate(self, document_id: int) -> dict[str, Any] | None:
        """Render and store the document; ``None`` (and no cache) when nothing qualifies."""

        document = self.repositories.documents.get_document(document_id)
        if document is None or not document.is_published:
            self.repositories.rendered.delete(document_id)
            return None
        mentions = self.repositories.entities.get_entities_for_post(
            document_id, self.min_confidence
        )
        if not mentions:
            self.repositories.rendered.delete(document_id)
            return None

        payload = self.build(document, mentions)
        self.repositories.rendered.save(
            RenderedDocument(document_id=document_id, payload=payload, rendered_at=self.clock())
        )
        log.debug("Rendered document %s with %s entities", document_id, len(mentions))
        return payload

    def invalidate(self, document_id: int) -> None:
        self.repositories.rendered.delete(document_id)

    def get_cached(self, document_id: int) -> dict[str, Any] | None:
        rendered = self.repositories.rendered.get(document_id)
        return rendered.payload if rendered is not None else None

    def build(self, document: Document, mentions: list[EntityMention]) -> dict[str, Any]:
        graph: list[dict[str, Any]] = [self._article(document, mentions)]
        graph.extend(self._entity_node(mention.entity) for mention in mentions)
        return {"@context": SCHEMA_CONTEXT, "@graph": graph}

    def entity_ref(self, entity: Entity) -> str:
        return f"{self.site_url}/#/entity/{entity.slug}"

    def _article(self, document: Document, mentions: list[EntityMention]) -> dict[str, Any]:
        page_url = document.url or f"{self.site_url}/?p={document.id}"
        article: dict[str, Any] = {
            "@type": ARTICLE_TYPES.get(document.content_type, "Article"),
            "@id": f"{page_url}#article",
            "headline": document.title,
            "dateModified": document.updated_at.isoformat(),
            "mainEntityOfPage": {"@type": "WebPage", "@id": page_url},
            "mentions": [{"@id": self.entity_ref(mention.entity)} for mention in mentions],
        }
        about = [
            {"@id": self.entity_ref(mention.entity)} for mention in mentions if mention.is_primary
        ]
        if about:
            article["about"] = about
        return article

    def _entity_node(self, entity: Entity) -> dict[str, Any]:
        node: dict[str, Any] = {
            "@type": schema_type_for(entity),
            "@id": self.entity_ref(entity),
            "name": entity.name,
        }
        if entity.description:
            node["description"] = entity.description
        same_as = [entity.same_as] if entity.same_as else []
        if entity.wikidata_id:
            same_as.append(f"{WIKIDATA_URL}{entity.wikidata_id}")
        if same_as:
            node["sameAs"] = same_as
        return node


def materializer_factory(
    *,
    site_url: str = DEFAULT_SITE_URL,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
) -> Callable[[PipelineRepositories], MaterializationService]:
    def build(repositories: PipelineRepositories) -> MaterializationService:
        return JsonLdMaterializer(repositories, site_url=site_url, min_confidence=min_confidence)

    return build
