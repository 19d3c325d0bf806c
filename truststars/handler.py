"""AWS Lambda handler exposing the ingestion triggers"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
from typing import Any, Optional

from truststars.config.settings import Settings, settings as default_settings
from truststars.crawlers.github.client import sanitize_for_log
from truststars.jobs.sync import run_ingest, run_sync_all
from truststars.orchestrator import AccountContext, IngestionOrchestrator
from truststars.utils.logger import setup_logger

logger = setup_logger("truststars.handler", level=default_settings.LOG_LEVEL)

ACTION_SYNC_ALL = "sync_all"
ACTION_INGEST = "ingest"
ACTION_UNLINK = "unlink"


def _parse_body(event: dict[str, Any]) -> dict[str, Any]:
    body = event.get("body")
    if isinstance(body, str) and body.strip():
        try:
            parsed = json.loads(body)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    if isinstance(body, dict):
        return body
    return {key: value for key, value in event.items() if key not in ("headers", "body")}


def _header(event: dict[str, Any], name: str) -> Optional[str]:
    headers = event.get("headers") or {}
    for key, value in headers.items():
        if str(key).lower() == name.lower():
            return value
    return None


def is_authorized(event: dict[str, Any], config: Settings | None = None) -> bool:
    """
    Shared-secret bearer check for HTTP invocations

    Scheduled invocations arrive without headers and are trusted; any event
    carrying headers must present `Bearer <CRON_SECRET>` when a secret is set.
    """
    config = config or default_settings
    secret = config.CRON_SECRET
    if not secret or "headers" not in event:
        return True

    expected = f"Bearer {secret}"
    provided = _header(event, "authorization") or ""
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _response(status_code: int, action: str, **fields: Any) -> dict[str, Any]:
    return {"statusCode": status_code, "action": action, **fields}


def lambda_handler(
    event: dict[str, Any] | None,
    context: Any,
    *,
    orchestrator: IngestionOrchestrator | None = None,
    config: Settings | None = None,
) -> dict[str, Any]:
    """
    Lambda entry point

    Event payload:
        {"action": "sync_all"}
        {"action": "ingest", "repository": "owner/name", "provider_token": "...",
         "account": {"user_id": "...", ...}, "description": "...", "image_url": "..."}
        {"action": "unlink", "user_id": "...", "repo_id": 1}

    Returns:
        {"statusCode", "action", "result"} or {"statusCode", "action", "error"}
    """
    del context
    event = event or {}
    payload = _parse_body(event)
    action = str(payload.get("action") or event.get("action") or ACTION_SYNC_ALL)

    if not is_authorized(event, config):
        logger.warning("Rejected unauthorized invocation", extra={"action": action})
        return _response(401, action, error="Unauthorized")

    orchestrator = orchestrator or IngestionOrchestrator()

    try:
        if action == ACTION_SYNC_ALL:
            result = asyncio.run(run_sync_all(orchestrator=orchestrator))
            return _response(200 if result["success"] else 500, action, result=result)

        if action == ACTION_INGEST:
            repository = payload.get("repository") or payload.get("url")
            if not repository:
                return _response(400, action, error="repository is required")
            account_payload = payload.get("account")
            account = None
            if isinstance(account_payload, dict) and account_payload.get("user_id"):
                account = AccountContext(
                    user_id=str(account_payload["user_id"]),
                    github_username=account_payload.get("github_username"),
                    avatar_url=account_payload.get("avatar_url"),
                    display_name=account_payload.get("display_name"),
                )
            result = asyncio.run(
                run_ingest(
                    repository=str(repository),
                    provider_token=payload.get("provider_token"),
                    account=account,
                    description=payload.get("description"),
                    image_url=payload.get("image_url"),
                    orchestrator=orchestrator,
                )
            )
            return _response(200 if result["success"] else 422, action, result=result)

        if action == ACTION_UNLINK:
            user_id = payload.get("user_id")
            repo_id = payload.get("repo_id")
            if not user_id or repo_id is None:
                return _response(400, action, error="user_id and repo_id are required")
            try:
                repo_id = int(repo_id)
            except (TypeError, ValueError):
                return _response(400, action, error="repo_id must be an integer")
            unlink = orchestrator.unlink_repository(user_id=str(user_id), repo_id=repo_id)
            body = {"success": unlink.success, "repository_deleted": unlink.repository_deleted}
            if unlink.error:
                body["error"] = unlink.error
            return _response(200 if unlink.success else 404, action, result=body)

        return _response(400, action, error=f"Unknown action: {action}")
    except Exception as exc:
        logger.exception("Handler failed", extra={"action": action})
        return _response(500, action, error=sanitize_for_log(str(exc)))
