from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from signal import SIGINT, signal
from typing import TYPE_CHECKING, Any

from dotenv import load_dotenv

from entigraph.app import (
    build_services,
    cancel_propagation,
    delete_alias,
    delete_mention,
    entity_mentions,
    import_documents,
    list_entities,
    mention_counts,
    merge_entities,
    pipeline_status,
    propagate_entity,
    read_documents,
    run_worker,
    start_pipeline,
    stop_pipeline,
    update_mention,
)
from entigraph.config import configure_logging
from entigraph.domain.model import EntityType

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import FrameType

    from entigraph.app import PipelineServices

log = logging.getLogger(__name__)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected an integer, got {value!r}") from exc
    if number <= 0:
        raise argparse.ArgumentTypeError(f"Expected a positive integer, got {number}")
    return number


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Entity extraction and resolution pipeline")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    documents = subparsers.add_parser(
        "import-documents", help="Load source documents from a JSON Lines file"
    )
    documents.add_argument("path", type=Path, help="File with one JSON document per line")

    start = subparsers.add_parser("start", help="Start a pipeline run")
    start.add_argument(
        "--content-type",
        dest="content_types",
        action="append",
        help="Content type to process (repeatable; defaults to post and page)",
    )
    start.add_argument(
        "--batch-size",
        type=_positive_int,
        help="Initial extraction batch size (clamped to the configured bounds)",
    )
    start.add_argument(
        "--force",
        action="store_true",
        help="Reprocess documents that were already extracted",
    )
    start.add_argument("--started-by", type=str, help="Name recorded with the run")

    subparsers.add_parser("stop", help="Stop the running pipeline")
    subparsers.add_parser("status", help="Print pipeline status as JSON")

    work = subparsers.add_parser("work", help="Run queued tasks")
    work.add_argument(
        "--once",
        action="store_true",
        help="Exit when no task is due instead of polling",
    )
    work.add_argument(
        "--poll-interval",
        type=float,
        default=1.0,
        help="Seconds to sleep between polls (default: %(default)s)",
    )

    propagate = subparsers.add_parser(
        "propagate", help="Regenerate every document mentioning an entity"
    )
    propagate.add_argument("entity_id", type=_positive_int)

    cancel = subparsers.add_parser("cancel-propagation", help="Cancel an active propagation")
    cancel.add_argument("entity_id", type=_positive_int)

    merge = subparsers.add_parser("merge", help="Merge entities into a target entity")
    merge.add_argument("target_id", type=_positive_int)
    merge.add_argument("source_ids", type=_positive_int, nargs="+")

    entities = subparsers.add_parser("entities", help="List canonical entities")
    entities.add_argument("--type", dest="entity_type", type=str, help="Filter by entity type")
    entities.add_argument("--search", type=str, help="Substring to match in names")
    entities.add_argument("--page", type=_positive_int, default=1)
    entities.add_argument("--per-page", type=_positive_int, default=20)

    mentions = subparsers.add_parser("mentions", help="List the mentions of an entity")
    mentions.add_argument("entity_id", type=_positive_int)
    mentions.add_argument("--limit", type=_positive_int, default=100)

    subparsers.add_parser("mention-counts", help="Print mention totals per entity type")

    edit_mention = subparsers.add_parser(
        "update-mention", help="Change the confidence or primary flag of a mention"
    )
    edit_mention.add_argument("mention_id", type=_positive_int)
    edit_mention.add_argument("--confidence", type=float, help="New confidence, clamped to 0-1")
    primary = edit_mention.add_mutually_exclusive_group()
    primary.add_argument("--primary", dest="is_primary", action="store_true", default=None)
    primary.add_argument("--not-primary", dest="is_primary", action="store_false")

    drop_mention = subparsers.add_parser("delete-mention", help="Remove a single mention")
    drop_mention.add_argument("mention_id", type=_positive_int)

    drop_alias = subparsers.add_parser("delete-alias", help="Remove an entity alias")
    drop_alias.add_argument("alias_id", type=_positive_int)

    return parser.parse_args(list(argv))


def _parse_entity_type(value: str | None) -> EntityType | None:
    if value is None:
        return None
    label = value.strip().upper()
    if label not in EntityType.__members__:
        choices = ", ".join(EntityType.__members__)
        raise ValueError(f"Unknown entity type {value!r} (choose from {choices})")
    return EntityType[label]


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _run(args: argparse.Namespace, services: PipelineServices | None) -> None:
    if args.command == "import-documents":
        rows = read_documents(args.path)
        count = import_documents(
            rows, unit_of_work_factory=services.uow_factory if services else None
        )
        log.info("Imported %s document(s) from %s", count, args.path)
    elif args.command == "start":
        config = start_pipeline(
            content_types=args.content_types,
            batch_size=args.batch_size,
            force_reprocess=args.force,
            started_by=args.started_by,
            services=services,
        )
        log.info("Pipeline started with batch size %s", config.batch_size)
    elif args.command == "stop":
        stop_pipeline(services=services)
    elif args.command == "status":
        _emit(asdict(pipeline_status(services=services)))
    elif args.command == "work":
        executed = run_worker(
            once=args.once, poll_interval=args.poll_interval, services=services
        )
        log.info("Worker executed %s task(s)", executed)
    elif args.command == "propagate":
        queued = propagate_entity(args.entity_id, services=services)
        log.info(
            "Propagation for entity %s %s",
            args.entity_id,
            "scheduled" if queued else "had nothing to do",
        )
    elif args.command == "cancel-propagation":
        cancelled = cancel_propagation(args.entity_id, services=services)
        log.info(
            "Propagation for entity %s %s",
            args.entity_id,
            "cancelled" if cancelled else "was not active",
        )
    elif args.command == "merge":
        affected = merge_entities(args.target_id, args.source_ids, services=services)
        _emit({"target_id": args.target_id, "affected_documents": affected})
    elif args.command == "entities":
        page = list_entities(
            entity_type=args.entity_type,
            search=args.search,
            page=args.page,
            per_page=args.per_page,
            services=services,
        )
        _emit(
            {
                "total": page.total,
                "page": page.page,
                "pages": page.pages,
                "items": [
                    {
                        "id": entity.id,
                        "name": entity.name,
                        "type": entity.type.value,
                        "status": entity.status.value,
                        "mention_count": entity.mention_count,
                    }
                    for entity in page.items
                ],
            }
        )
    elif args.command == "mentions":
        _emit(
            [
                {
                    "id": mention.id,
                    "document_id": mention.document_id,
                    "confidence": mention.confidence,
                    "is_primary": mention.is_primary,
                    "context": mention.context,
                }
                for mention in entity_mentions(
                    args.entity_id, limit=args.limit, services=services
                )
            ]
        )
    elif args.command == "mention-counts":
        _emit(mention_counts(services=services))
    elif args.command == "update-mention":
        mention = update_mention(
            args.mention_id,
            confidence=args.confidence,
            is_primary=args.is_primary,
            services=services,
        )
        _emit(
            {
                "id": mention.id,
                "confidence": mention.confidence,
                "is_primary": mention.is_primary,
            }
        )
    elif args.command == "delete-mention":
        deleted = delete_mention(args.mention_id, services=services)
        log.info("Mention %s %s", args.mention_id, "deleted" if deleted else "not found")
    elif args.command == "delete-alias":
        deleted = delete_alias(args.alias_id, services=services)
        log.info("Alias %s %s", args.alias_id, "deleted" if deleted else "not found")
    else:
        raise ValueError(f"Unsupported command: {args.command}")


def main(argv: Sequence[str] | None = None, *, services: PipelineServices | None = None) -> None:
    """Main application entry point."""
    load_dotenv()
    args_list = list(argv) if argv is not None else list(sys.argv[1:])
    try:
        parsed_args = _parse_args(args_list)
        if parsed_args.command == "entities":
            parsed_args.entity_type = _parse_entity_type(parsed_args.entity_type)
        if parsed_args.command == "merge" and parsed_args.target_id in parsed_args.source_ids:
            raise ValueError("An entity cannot be merged into itself")  # noqa: TRY301
        if (
            parsed_args.command == "update-mention"
            and parsed_args.confidence is None
            and parsed_args.is_primary is None
        ):
            raise ValueError("update-mention needs --confidence or a primary flag")  # noqa: TRY301
    except ValueError:
        configure_logging()
        log.exception("CLI validation error")
        sys.exit(2)

    configure_logging(level=logging.DEBUG if parsed_args.verbose else logging.INFO)
    try:
        if services is None and parsed_args.command != "import-documents":
            services = build_services()
        _run(parsed_args, services)
    except Exception:
        log.exception("Fatal error running %s", parsed_args.command)
        sys.exit(1)


def sigint_handler(_signal_received: int, _frame: FrameType | None) -> None:
    """Handle SIGINT (Ctrl+C) gracefully."""
    log.info("Closed by user (Ctrl+C)")
    sys.exit(0)


def run() -> None:
    signal(SIGINT, sigint_handler)
    main()


if __name__ == "__main__":
    run()
