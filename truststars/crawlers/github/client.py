"""Async GitHub REST client with per-call credential fallback."""

from __future__ import annotations

from datetime import UTC, datetime
import logging
import re
import time
from typing import Any, Mapping, Optional

import httpx

from truststars.config.settings import Settings, settings as default_settings
from truststars.crawlers.github.contracts import (
    ActivityPayload,
    CommitEntry,
    FetchResult,
    FetchState,
    RepoDetails,
    RepoMetadata,
)
from truststars.crawlers.github.credentials import CALLER, Credential, CredentialPlan, mask_token
from truststars.exceptions import (
    NotFoundError,
    RateLimitedError,
    TransientError,
    TrustStarsError,
    UnauthorizedError,
)

logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"
_SENSITIVE_KEYS = ("authorization", "token", "api_key", "apikey", "secret", "password", "session", "cookie")
_PAYLOAD_KEYS = ("body", "content", "payload_text")
_INLINE_SECRET_PATTERNS = (
    re.compile(r"(?i)(bearer|token)\s+[A-Za-z0-9_\-\.=]+"),
    re.compile(r"(?i)((?:access_)?token|api_key|secret|password)=([^&\s]+)"),
    re.compile(r"\b(gh[pousr]_[A-Za-z0-9]{8,}|github_pat_[A-Za-z0-9_]{8,})\b"),
)


def _redact_text(text: str) -> str:
    text = _INLINE_SECRET_PATTERNS[0].sub(lambda m: f"{m.group(1)} {REDACTED}", text)
    text = _INLINE_SECRET_PATTERNS[1].sub(lambda m: f"{m.group(1)}={REDACTED}", text)
    return _INLINE_SECRET_PATTERNS[2].sub(REDACTED, text)


def sanitize_for_log(value: Any, key: str | None = None) -> Any:
    """Redact credentials and bulky payloads before logging or returning stats."""
    lowered = (key or "").lower()
    if lowered and any(marker in lowered for marker in _SENSITIVE_KEYS):
        return REDACTED if value is not None else None

    if isinstance(value, Mapping):
        return {k: sanitize_for_log(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_for_log(item) for item in value]
    if isinstance(value, str):
        if lowered in _PAYLOAD_KEYS:
            return f"<redacted payload len={len(value)}>"
        return _redact_text(value)
    return value


def sanitize_log_extra(**fields: Any) -> dict[str, Any]:
    return {key: sanitize_for_log(value, key=key) for key, value in fields.items()}


def format_since(since: datetime) -> str:
    if since.tzinfo is None:
        since = since.replace(tzinfo=UTC)
    return since.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def error_for_result(result: FetchResult[Any], *, subject: str) -> TrustStarsError:
    """Map a failed fetch to the typed error callers surface to users."""
    status = result.status_code
    message = f"{subject}: {result.error or 'request failed'}"
    if status in (403, 429):
        return RateLimitedError(message, retry_after=result.retry_after, status_code=status)
    if status == 401:
        return UnauthorizedError(message, status_code=status)
    if status is None or status >= 500:
        return TransientError(message, status_code=status)
    return NotFoundError(message, status_code=status)


class GitHubClient:
    """Thin GitHub REST wrapper returning `FetchResult` contracts."""

    def __init__(
        self,
        *,
        token: Optional[str] = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._service_token = token if token is not None else self._settings.GITHUB_ACCESS_TOKEN
        self._client = httpx.AsyncClient(
            base_url=self._settings.GITHUB_API_URL,
            headers={
                "Accept": self._settings.GITHUB_ACCEPT_HEADER,
                "User-Agent": self._settings.USER_AGENT,
            },
            timeout=timeout_seconds or self._settings.GITHUB_TIMEOUT_SECONDS,
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def service_token(self) -> Optional[str]:
        return self._service_token

    def plan_for(self, caller_token: Optional[str] = None) -> CredentialPlan:
        return CredentialPlan.resolve(caller_token, self._service_token)

    async def _request(
        self,
        path: str,
        *,
        plan: CredentialPlan | None = None,
        params: dict[str, Any] | None = None,
    ) -> FetchResult[Any]:
        plan = plan or self.plan_for(None)
        credentials = list(plan)
        result: FetchResult[Any] = FetchResult(state=FetchState.FAILED, error="no credentials attempted")

        for index, credential in enumerate(credentials):
            result = await self._attempt(path, credential=credential, params=params)
            if not result.is_failed:
                return result

            has_next = index + 1 < len(credentials)
            if not has_next or not plan.should_fall_back(result.status_code, credential):
                break

            logger.warning(
                "GitHub credential rejected, falling back",
                extra=sanitize_log_extra(
                    path=path,
                    status_code=result.status_code,
                    credential=credential.label,
                    next_credential=credentials[index + 1].label,
                ),
            )

        logger.warning(
            "GitHub request failed",
            extra=sanitize_log_extra(
                path=path,
                params=params,
                status_code=result.status_code,
                credential=result.credential,
                error=result.error,
            ),
        )
        return result

    async def _attempt(
        self,
        path: str,
        *,
        credential: Credential,
        params: dict[str, Any] | None,
    ) -> FetchResult[Any]:
        headers = {}
        if credential.token:
            headers["Authorization"] = f"Bearer {credential.token}"

        try:
            response = await self._client.get(path, params=params, headers=headers)
        except httpx.HTTPError as exc:
            return FetchResult(
                state=FetchState.FAILED,
                error=sanitize_for_log(f"network error: {exc.__class__.__name__}: {exc}"),
                credential=credential.label,
            )

        self._log_rate_limit(response, credential)

        if 200 <= response.status_code < 300:
            try:
                data = response.json()
            except ValueError:
                return FetchResult(
                    state=FetchState.FAILED,
                    status_code=response.status_code,
                    error="invalid JSON in response",
                    credential=credential.label,
                )
            state = FetchState.EMPTY if data in ([], {}, None) else FetchState.OK
            return FetchResult(state=state, data=data, status_code=response.status_code, credential=credential.label)

        if response.status_code == 404 and credential.token:
            logger.debug(
                "GitHub returned 404 for an authenticated request",
                extra=sanitize_log_extra(path=path, credential=credential.label, hint=mask_token(credential.token)),
            )

        return FetchResult(
            state=FetchState.FAILED,
            status_code=response.status_code,
            error=sanitize_for_log(self._error_message(response)),
            credential=credential.label,
            retry_after=self._retry_after(response),
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("message"):
            return f"HTTP {response.status_code}: {payload['message']}"
        return f"HTTP {response.status_code}"

    @staticmethod
    def _retry_after(response: httpx.Response) -> float | None:
        retry_after = response.headers.get("retry-after")
        if retry_after:
            try:
                return max(float(retry_after), 0.0)
            except ValueError:
                return None

        if response.headers.get("x-ratelimit-remaining") == "0":
            reset = response.headers.get("x-ratelimit-reset")
            if reset and reset.isdigit():
                return max(float(int(reset) - int(time.time())), 0.0)
        return None

    @staticmethod
    def _log_rate_limit(response: httpx.Response, credential: Credential) -> None:
        remaining = response.headers.get("x-ratelimit-remaining")
        limit = response.headers.get("x-ratelimit-limit")
        if remaining is not None and limit is not None:
            logger.debug(
                "GitHub rate limit",
                extra=sanitize_log_extra(credential=credential.label, ratelimit=f"{remaining}/{limit}"),
            )

    async def get_repo(self, full_name: str, *, plan: CredentialPlan | None = None) -> FetchResult[dict[str, Any]]:
        return await self._request(f"/repos/{full_name}", plan=plan)

    async def get_user(self, login: str, *, plan: CredentialPlan | None = None) -> FetchResult[dict[str, Any]]:
        return await self._request(f"/users/{login}", plan=plan)

    async def list_commits(
        self,
        full_name: str,
        *,
        since: datetime,
        plan: CredentialPlan | None = None,
        per_page: int | None = None,
    ) -> FetchResult[list[dict[str, Any]]]:
        params = {"since": format_since(since), "per_page": per_page or self._settings.COMMITS_PER_PAGE}
        result = await self._request(f"/repos/{full_name}/commits", plan=plan, params=params)
        if result.is_empty:
            result.data = []
        elif result.is_ok and not isinstance(result.data, list):
            return FetchResult(
                state=FetchState.FAILED,
                status_code=result.status_code,
                error="unexpected commits payload",
                credential=result.credential,
            )
        return result

    async def search_issue_count(self, query: str, *, plan: CredentialPlan | None = None) -> FetchResult[int]:
        result = await self._request("/search/issues", plan=plan, params={"q": query, "per_page": 1})
        if result.is_failed:
            return result

        payload = result.data if isinstance(result.data, dict) else {}
        total = payload.get("total_count")
        if not isinstance(total, int):
            return FetchResult(
                state=FetchState.FAILED,
                status_code=result.status_code,
                error="search response missing total_count",
                credential=result.credential,
            )
        return FetchResult(state=FetchState.OK, data=total, status_code=result.status_code, credential=result.credential)

    async def list_user_repos(self, *, plan: CredentialPlan) -> FetchResult[list[dict[str, Any]]]:
        params = {"sort": "updated", "per_page": 100, "type": "all"}
        result = await self._request("/user/repos", plan=plan, params=params)
        if result.is_empty:
            result.data = []
        return result

    async def fetch_repository(self, full_name: str, *, plan: CredentialPlan | None = None) -> RepoMetadata:
        """
        Fetch repository details and the owner's display name

        Raises:
            NotFoundError, RateLimitedError, UnauthorizedError, TransientError
        """
        plan = plan or self.plan_for(None)
        result = await self.get_repo(full_name, plan=plan)
        if result.is_failed or not isinstance(result.data, dict):
            if not result.is_failed:
                result = FetchResult(state=FetchState.FAILED, status_code=result.status_code, error="empty repository payload")
            raise error_for_result(result, subject=f"repository {full_name}")

        details = RepoDetails.from_payload(result.data)
        owner_display_name = details.owner.login
        if details.owner.login:
            owner_result = await self.get_user(details.owner.login, plan=plan)
            if owner_result.is_ok and isinstance(owner_result.data, dict):
                owner_display_name = owner_result.data.get("name") or owner_result.data.get("login") or owner_display_name

        return RepoMetadata(
            details=details,
            owner_display_name=owner_display_name,
            authenticated_with_caller=result.credential == CALLER,
        )

    async def fetch_activity(
        self,
        full_name: str,
        *,
        since: datetime,
        plan: CredentialPlan | None = None,
    ) -> ActivityPayload:
        """Fetch commit and pull request signals; failed sub-fetches degrade to empty."""
        plan = plan or self.plan_for(None)
        payload = ActivityPayload()
        since_text = format_since(since)

        commits_result = await self.list_commits(full_name, since=since, plan=plan)
        if commits_result.is_failed:
            payload.failures.append(f"commits: {commits_result.error}")
        else:
            payload.commits = [
                CommitEntry.from_payload(entry) for entry in (commits_result.data or []) if isinstance(entry, dict)
            ]

        opened = await self.search_issue_count(f"repo:{full_name} is:pr created:>{since_text}", plan=plan)
        if opened.is_failed:
            payload.failures.append(f"prs_opened: {opened.error}")
        else:
            payload.prs_opened = opened.data

        merged = await self.search_issue_count(f"repo:{full_name} is:pr merged:>{since_text}", plan=plan)
        if merged.is_failed:
            payload.failures.append(f"prs_merged: {merged.error}")
        else:
            payload.prs_merged = merged.data

        if payload.failures:
            logger.info(
                "Activity signals partially unavailable",
                extra=sanitize_log_extra(repo=full_name, failures=payload.failures),
            )
        return payload
