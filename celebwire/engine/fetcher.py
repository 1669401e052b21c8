"""Batch fetch execution against the external news search API."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import httpx
import structlog

from ..config import FetchSettings
from ..errors import ErrorKind
from ..logging_conf import component_logger
from ..models import Batch, Credential, CredentialUpdate, ProbeOutcome, RateLimitInfo, utcnow
from .credentials import CredentialPool, classify_response, error_code


@dataclass(slots=True)
class RawFetchResult:
    """Flat list of raw API items plus what it cost to get them."""

    items: list[dict[str, Any]] = field(default_factory=list)
    ok: bool = False
    query: str = ""
    key_id: str | None = None
    api_calls: int = 0
    total_results: int | None = None
    rate_limit: RateLimitInfo | None = None
    error_kind: ErrorKind | None = None
    error: str | None = None
    omitted_entities: list[str] = field(default_factory=list)
    updates: list[CredentialUpdate] = field(default_factory=list)


def _quote(term: str) -> str:
    cleaned = term.replace('"', " ").strip()
    return f'"{cleaned}"' if " " in cleaned else cleaned


def build_query(batch: Batch, max_length: int = 500) -> tuple[str, list[str]]:
    """Join the batch's search terms into one disjunctive query.

    Aliases are dropped first when the query would exceed ``max_length``; if the
    names alone are still too long, trailing entities are left out and returned
    as the second element.
    """

    with_aliases = " OR ".join(_quote(term) for entity in batch.entities for term in entity.search_terms)
    if len(with_aliases) <= max_length:
        return with_aliases, []

    parts: list[str] = []
    omitted: list[str] = []
    for entity in batch.entities:
        candidate = " OR ".join([*parts, _quote(entity.name)])
        if len(candidate) <= max_length:
            parts.append(_quote(entity.name))
        else:
            omitted.append(entity.name)
    return " OR ".join(parts), omitted


def _parse_rate_limit(headers: httpx.Headers) -> RateLimitInfo | None:
    remaining_raw = headers.get("x-ratelimit-remaining")
    reset_raw = headers.get("x-ratelimit-reset")
    if remaining_raw is None and reset_raw is None:
        return None
    remaining = int(remaining_raw) if remaining_raw and remaining_raw.isdigit() else None
    reset = None
    if reset_raw and reset_raw.isdigit():
        reset = datetime.fromtimestamp(int(reset_raw), tz=timezone.utc)
    return RateLimitInfo(remaining=remaining, reset=reset)


def _without_candidates(pool: CredentialPool) -> tuple[ErrorKind, str]:
    if pool.empty:
        return ErrorKind.NO_CREDENTIALS, "No API credentials configured"
    summary = pool.health_summary()
    if summary["invalid_keys"]:
        return (
            ErrorKind.INVALID_CREDENTIAL,
            f"No usable API credentials ({summary['invalid_keys']} invalid, "
            f"{summary['rate_limited_keys']} rate limited)",
        )
    return ErrorKind.ALL_RATE_LIMITED, "All API credentials are rate limited"


class FetchExecutor:
    """Issue one combined request per batch with credential fallback and retry."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: FetchSettings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.client = client
        self.settings = settings or FetchSettings()
        self.clock = clock
        self.sleep = sleep
        self.logger = logger or component_logger("fetcher")

    def _params(self, query: str) -> dict[str, Any]:
        params: dict[str, Any] = {
            "q": query,
            "sortBy": self.settings.sort_by,
            "pageSize": self.settings.page_size,
        }
        if self.settings.language:
            params["language"] = self.settings.language
        if self.settings.lookback_days:
            since = self.clock() - timedelta(days=self.settings.lookback_days)
            params["from"] = since.date().isoformat()
        return params

    def _backoff(self, attempt: int) -> float:
        return min(self.settings.backoff_max, self.settings.backoff_base * (2 ** (attempt - 1)))

    async def execute(self, batch: Batch, pool: CredentialPool) -> RawFetchResult:
        """Fetch raw items for ``batch`` using credentials offered by ``pool``.

        Rate-limited or invalid credentials hand over to the next candidate.
        Transient failures (transport errors, 5xx) are retried on the same
        credential up to ``retry_count`` times. The pool is never mutated here;
        each credential's final outcome is returned in ``updates``.
        """

        query, omitted = build_query(batch, self.settings.max_query_length)
        result = RawFetchResult(query=query, omitted_entities=omitted)
        if omitted:
            self.logger.warning("query_truncated", batch=batch.index, omitted=omitted)

        candidates = pool.candidates()
        if not candidates:
            result.error_kind, result.error = _without_candidates(pool)
            self.logger.error("batch_fetch_skipped", batch=batch.index, error_kind=result.error_kind.value)
            return result

        params = self._params(query)
        rate_limited = 0
        for credential in candidates:
            outcome = await self._execute_with(credential, params, result)
            if outcome is ProbeOutcome.VALID:
                result.ok = True
                result.key_id = credential.key_id
                result.error_kind = None
                result.error = None
                self.logger.info(
                    "batch_fetched",
                    batch=batch.index,
                    key_id=credential.key_id,
                    items=len(result.items),
                    api_calls=result.api_calls,
                )
                return result
            if outcome is ProbeOutcome.RATE_LIMITED:
                rate_limited += 1
                self.logger.warning("credential_rotating", key_id=credential.key_id, reason="rate_limited")
                continue
            if outcome is ProbeOutcome.INVALID:
                self.logger.warning("credential_rotating", key_id=credential.key_id, reason="invalid")
                continue
            # Transient retries exhausted or a non-retryable service error.
            return result

        if rate_limited == len(candidates):
            result.error_kind = ErrorKind.ALL_RATE_LIMITED
            result.error = "All API credentials are rate limited"
        return result

    async def _execute_with(
        self, credential: Credential, params: dict[str, Any], result: RawFetchResult
    ) -> ProbeOutcome:
        attempt = 0
        while True:
            result.api_calls += 1
            try:
                response = await self.client.get(
                    self.settings.base_url,
                    params=params,
                    headers={"X-Api-Key": credential.secret},
                    timeout=self.settings.request_timeout,
                )
            except httpx.HTTPError as exc:
                outcome = ProbeOutcome.NETWORK_ERROR
                result.error_kind = ErrorKind.NETWORK
                result.error = f"{type(exc).__name__}: {exc}"
                retryable = True
            else:
                outcome = classify_response(response)
                rate_limit = _parse_rate_limit(response.headers)
                if rate_limit is not None:
                    result.rate_limit = rate_limit
                if outcome is ProbeOutcome.VALID:
                    payload = response.json()
                    result.items = [item for item in payload.get("articles") or [] if isinstance(item, dict)]
                    result.total_results = payload.get("totalResults")
                    result.updates.append(CredentialUpdate(credential.key_id, outcome, self.clock()))
                    return outcome
                if outcome is ProbeOutcome.RATE_LIMITED:
                    result.error_kind = ErrorKind.RATE_LIMITED
                    result.error = f"Credential {credential.key_id} rate limited"
                    retryable = False
                elif outcome is ProbeOutcome.INVALID:
                    result.error_kind = ErrorKind.INVALID_CREDENTIAL
                    result.error = f"Credential {credential.key_id} rejected ({error_code(response) or response.status_code})"
                    retryable = False
                else:
                    result.error_kind = ErrorKind.EXTERNAL_SERVICE
                    result.error = f"Search API returned {response.status_code} ({error_code(response) or 'no code'})"
                    retryable = response.status_code >= 500

            if outcome in (ProbeOutcome.RATE_LIMITED, ProbeOutcome.INVALID):
                result.updates.append(CredentialUpdate(credential.key_id, outcome, self.clock()))
                return outcome
            if not retryable or attempt >= self.settings.retry_count:
                # one failure per credential per batch, however many attempts it took
                result.updates.append(CredentialUpdate(credential.key_id, outcome, self.clock()))
                self.logger.error(
                    "batch_fetch_failed",
                    key_id=credential.key_id,
                    attempts=attempt + 1,
                    error_kind=result.error_kind.value if result.error_kind else None,
                    error=result.error,
                )
                return outcome
            attempt += 1
            delay = self._backoff(attempt)
            self.logger.warning(
                "batch_fetch_retry",
                key_id=credential.key_id,
                attempt=attempt,
                delay=delay,
                error=result.error,
            )
            await self.sleep(delay)


__all__ = ["FetchExecutor", "RawFetchResult", "build_query"]
