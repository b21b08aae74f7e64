"""
CLI entrypoint for one-shot collection and maintenance runs.

Use cases:
- Cron / scheduled job: python -m vodhub.cli collect --type incremental
- Nightly link check: python -m vodhub.cli validate --limit 500
- Catalog repair: python -m vodhub.cli low-quality, python -m vodhub.cli rescore
- Housekeeping: python -m vodhub.cli prune-tasks --days 30

Behavior:
- collect starts a task through the orchestrator and waits for it to finish
- every command works against the database in DATABASE_URL
"""
import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

from .collector.orchestrator import CollectionOrchestrator
from .config import settings
from .database import Database, SourceRegistry, TaskRepository, VideoRepository
from .errors import SourceNotFound, TaskAlreadyRunning
from .logging_config import setup_logging
from .models import SourceConfig
from .models.tasks import TASK_TYPES
from .validator.url_validator import UrlValidator

logger = setup_logging(__name__)


async def run_collect(
    database: Database,
    task_type: str,
    category: Optional[int] = None,
    max_pages: Optional[int] = None,
    source: Optional[str] = None,
) -> Dict[str, Any]:
    """Run one collection task to completion; return its final snapshot"""
    orchestrator = CollectionOrchestrator(database)

    if task_type == "incremental":
        task_id = await orchestrator.run_incremental(max_pages)
    elif task_type == "full":
        task_id = await orchestrator.run_full()
    elif task_type == "source":
        task_id = await orchestrator.run_source(source, max_pages)
    else:
        task_id = await orchestrator.run_category(category, max_pages)

    logger.info(f"Started {task_type} task {task_id}")
    snapshot = await orchestrator.wait(task_id)
    return snapshot.model_dump(mode="json")


async def run_validate(database: Database, limit: Optional[int] = None) -> Dict[str, int]:
    async with UrlValidator(database) as validator:
        return await validator.validate_batch(limit)


async def run_rescore(database: Database) -> Dict[str, int]:
    changed = await VideoRepository(database.session_factory).rescore_all()
    return {"changed": changed}


async def run_low_quality(database: Database, threshold: int, limit: int) -> List[Dict[str, Any]]:
    videos = await VideoRepository(database.session_factory).list_low_quality(threshold, limit)
    return [
        {
            "id": v.id,
            "title": v.title,
            "year": v.year,
            "quality_score": v.quality_score,
            "is_valid": v.is_valid,
            "sources": list(v.source_names or []),
        }
        for v in videos
    ]


async def run_prune_tasks(database: Database, days: Optional[int] = None) -> Dict[str, int]:
    deleted = await TaskRepository(database.session_factory).prune_tasks(days)
    return {"deleted": deleted}


async def run_add_source(database: Database, config: SourceConfig, enabled: bool = True) -> Dict[str, Any]:
    source = await SourceRegistry(database.session_factory).upsert_source(config, enabled=enabled)
    return {"id": str(source.id), "name": source.name, "weight": source.weight, "enabled": source.enabled}


def _parse_categories(value: str) -> List[int]:
    return [int(part) for part in value.split(",") if part.strip()]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vodhub", description="VodHub collection pipeline")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first")
    sub = parser.add_subparsers(dest="command", required=True)

    collect = sub.add_parser("collect", help="Run one collection task")
    collect.add_argument("--type", dest="task_type", choices=list(TASK_TYPES), default="incremental")
    collect.add_argument("--category", type=int, default=None, help="Category id (category tasks)")
    collect.add_argument("--source", default=None, help="Source name (source tasks)")
    collect.add_argument("--max-pages", type=int, default=None, help="Page cap per source")

    validate = sub.add_parser("validate", help="Validate one batch of playback URLs")
    validate.add_argument("--limit", type=int, default=None, help="Videos to check")

    sub.add_parser("rescore", help="Recompute every quality score")

    low = sub.add_parser("low-quality", help="List videos below the quality threshold")
    low.add_argument("--threshold", type=int, default=settings.LOW_QUALITY_THRESHOLD)
    low.add_argument("--limit", type=int, default=100)

    prune = sub.add_parser("prune-tasks", help="Delete finished tasks past the retention window")
    prune.add_argument("--days", type=int, default=None, help="Override TASK_RETENTION_DAYS")

    add = sub.add_parser("add-source", help="Register or update a resource site")
    add.add_argument("name")
    add.add_argument("url")
    add.add_argument("--weight", type=int, default=50)
    add.add_argument("--type", dest="source_type", choices=["cms", "tvbox"], default="cms")
    add.add_argument("--format", dest="response_format", choices=["auto", "json", "xml"], default="auto")
    add.add_argument("--timeout", type=float, default=None)
    add.add_argument("--categories", type=_parse_categories, default=[], help="Comma separated category ids")
    add.add_argument("--disabled", action="store_true")

    return parser


async def run_command(args: argparse.Namespace, database: Database) -> Any:
    if args.create_tables:
        await database.create_tables()

    if args.command == "collect":
        if args.task_type == "category" and args.category is None:
            raise ValueError("--category is required for category tasks")
        if args.task_type == "source" and not args.source:
            raise ValueError("--source is required for source tasks")
        return await run_collect(database, args.task_type, args.category, args.max_pages, args.source)
    if args.command == "validate":
        return await run_validate(database, args.limit)
    if args.command == "rescore":
        return await run_rescore(database)
    if args.command == "low-quality":
        return await run_low_quality(database, args.threshold, args.limit)
    if args.command == "prune-tasks":
        return await run_prune_tasks(database, args.days)
    if args.command == "add-source":
        config = SourceConfig(
            name=args.name,
            url=args.url,
            weight=args.weight,
            source_type=args.source_type,
            response_format=args.response_format,
            timeout=args.timeout,
            categories=args.categories,
        )
        return await run_add_source(database, config, enabled=not args.disabled)
    raise ValueError(f"Unknown command {args.command}")


async def _main(args: argparse.Namespace) -> Any:
    database = Database(args.database_url) if args.database_url else Database()
    try:
        return await run_command(args, database)
    finally:
        await database.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        out = asyncio.run(_main(args))
    except TaskAlreadyRunning as e:
        logger.warning(str(e))
        return 2
    except SourceNotFound as e:
        logger.error(str(e))
        return 1
    except ValueError as e:
        logger.error(str(e))
        return 1

    # Minimal stdout for cron visibility
    print(json.dumps(out, ensure_ascii=False, indent=2, default=str))
    if isinstance(out, dict) and out.get("status") == "failed":
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
