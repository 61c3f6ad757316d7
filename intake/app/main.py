"""Command-line entry point: queue local files for extraction and wait for the results."""
from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Sequence

from loguru import logger

from intake.app.composition import NothingToMatchError, WorkerDependencies, create_worker_dependencies
from intake.app.constants import QUEUE_KIND
from intake.app.core import SERVICE_NAME
from intake.app.domain.extraction_service import ExtractionError
from intake.app.domain.models import UploadedFile


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="intake",
        description="Send receipt images and bank statements to the extraction service.",
    )
    parser.add_argument("receipts", nargs="*", type=Path, help="receipt image files")
    parser.add_argument(
        "--statement",
        dest="statements",
        action="append",
        default=[],
        type=Path,
        help="statement file (PDF or image); may be repeated",
    )
    parser.add_argument(
        "--match",
        action="store_true",
        help="match completed receipts against completed statements once processing finishes",
    )
    return parser


def enqueue_files(deps: WorkerDependencies, kind: str, paths: Sequence[Path]) -> list[str]:
    queue = deps.queue(kind)
    ids: list[str] = []
    for path in paths:
        item_id = f"{kind}:{path}"
        if queue.add_to_queue(item_id, UploadedFile.from_path(path)):
            ids.append(item_id)
    return ids


def summarize(deps: WorkerDependencies) -> dict[str, Any]:
    items: list[dict[str, Any]] = []
    for kind, queue in deps.queues.items():
        for item in queue.items:
            entry = item.to_dict()
            entry["kind"] = kind
            result = deps.result(kind, item.id)
            if result is not None:
                entry["result"] = result
            items.append(entry)
    return {"stats": deps.combined_stats().to_dict(), "items": items}


async def _match(deps: WorkerDependencies) -> dict[str, Any]:
    try:
        return await deps.match_completed()
    except (NothingToMatchError, ExtractionError) as e:
        logger.warning("matching skipped: {}", e)
        return {"error": str(e)}


async def run(receipts: Sequence[Path], statements: Sequence[Path], *, match: bool = False) -> dict[str, Any]:
    deps = create_worker_dependencies()
    await deps.connect()
    shutdown = asyncio.Event()

    def request_shutdown() -> None:
        if not shutdown.is_set():
            _log("shutdown_signal")
            deps.pause_all()
            shutdown.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
        except NotImplementedError:
            pass

    try:
        enqueue_files(deps, QUEUE_KIND.RECEIPTS, receipts)
        enqueue_files(deps, QUEUE_KIND.STATEMENTS, statements)
        _log("worker_started", stats=deps.combined_stats().to_dict())

        drain_task = asyncio.create_task(deps.join_all())
        stop_task = asyncio.create_task(shutdown.wait())
        await asyncio.wait({drain_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        for task in (drain_task, stop_task):
            task.cancel()
        await asyncio.gather(drain_task, stop_task, return_exceptions=True)

        summary = summarize(deps)
        if match and not shutdown.is_set():
            summary["matches"] = await _match(deps)
        return summary
    finally:
        await deps.close()
        _log("worker_stopped")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    missing = [str(p) for p in [*args.receipts, *args.statements] if not p.is_file()]
    if missing:
        logger.error("files not found: {}", ", ".join(missing))
        return 2
    try:
        summary = asyncio.run(run(args.receipts, args.statements, match=args.match))
    except KeyboardInterrupt:
        _log("worker_interrupted")
        return 130
    except Exception as e:
        logger.exception("worker failed: {}", e)
        raise
    json.dump(summary, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 1 if summary["stats"]["error"] else 0


if __name__ == "__main__":
    sys.exit(main())
