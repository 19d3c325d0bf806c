"""Job entry points for the scheduled bulk sync and one-off ingestion."""

from __future__ import annotations

import argparse
import asyncio
from datetime import UTC, datetime
import logging
from typing import Any, Sequence

from truststars.config.settings import settings
from truststars.crawlers.github.client import sanitize_for_log
from truststars.orchestrator import AccountContext, IngestionOrchestrator
from truststars.utils.logger import setup_logger

logger = logging.getLogger(__name__)


async def run_sync_all(
    *,
    orchestrator: IngestionOrchestrator | None = None,
    timeout_seconds: float | None = None,
) -> dict[str, Any]:
    """
    Run one bulk sync pass

    A timeout aborts the remaining repositories only; each repository commits
    on its own, so the next trigger picks up where this one stopped.
    """
    orchestrator = orchestrator or IngestionOrchestrator()
    started_at = datetime.now(UTC).isoformat()
    try:
        if timeout_seconds:
            result = await asyncio.wait_for(orchestrator.sync_all_repositories(), timeout=timeout_seconds)
        else:
            result = await orchestrator.sync_all_repositories()
    except asyncio.TimeoutError:
        logger.warning("Bulk sync timed out", extra={"timeout_seconds": timeout_seconds})
        return {
            "success": False,
            "error": f"sync timed out after {timeout_seconds} seconds",
            "started_at": started_at,
        }

    return {
        "success": True,
        "results": result.to_dict(),
        "started_at": started_at,
        "completed_at": datetime.now(UTC).isoformat(),
    }


async def run_ingest(
    *,
    repository: str,
    provider_token: str | None = None,
    account: AccountContext | None = None,
    description: str | None = None,
    image_url: str | None = None,
    orchestrator: IngestionOrchestrator | None = None,
) -> dict[str, Any]:
    orchestrator = orchestrator or IngestionOrchestrator()
    result = await orchestrator.ingest_repository(
        repository,
        caller_token=provider_token,
        account=account,
        custom_description=description,
        custom_image_url=image_url,
    )
    return result.to_dict()


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="truststars-sync", description="TrustStars repository ingestion jobs")
    subcommands = parser.add_subparsers(dest="command", required=True)

    sync_parser = subcommands.add_parser("sync-all", help="refresh every tracked repository")
    sync_parser.add_argument("--timeout", type=float, default=None, help="abort after N seconds")

    ingest_parser = subcommands.add_parser("ingest", help="add or refresh one repository")
    ingest_parser.add_argument("repository", help="owner/name or GitHub URL")

    args = parser.parse_args(argv)
    setup_logger("truststars", level=settings.LOG_LEVEL)

    if args.command == "sync-all":
        output = asyncio.run(run_sync_all(timeout_seconds=args.timeout))
    else:
        output = asyncio.run(run_ingest(repository=args.repository))

    logger.info("Job finished", extra={"output": sanitize_for_log(output)})
    print(output)
    return 0 if output.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
