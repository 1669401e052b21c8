"""Credential pool: probing, selection and health bookkeeping for API keys."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable

import httpx
import structlog

from ..config import CredentialSettings
from ..errors import CredentialsRejected, NoCredentialsConfigured
from ..infra.storage import StateStore
from ..logging_conf import component_logger
from ..models import Credential, CredentialStatus, CredentialUpdate, ProbeOutcome, utcnow

INVALID_KEY_CODES = frozenset({"apiKeyInvalid", "apiKeyDisabled", "apiKeyExhausted", "apiKeyMissing"})
RATE_LIMIT_CODES = frozenset({"rateLimited"})


def error_code(response: httpx.Response) -> str | None:
    """Return the NewsAPI ``code`` field of an error body, if any."""

    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        code = payload.get("code")
        return str(code) if code else None
    return None


def classify_response(response: httpx.Response) -> ProbeOutcome:
    """Map an HTTP response from the search API onto a credential outcome."""

    code = error_code(response)
    if response.status_code == 429 or code in RATE_LIMIT_CODES:
        return ProbeOutcome.RATE_LIMITED
    if response.status_code == 401 or code in INVALID_KEY_CODES:
        return ProbeOutcome.INVALID
    if response.status_code == 200:
        try:
            payload = response.json()
        except ValueError:
            return ProbeOutcome.NETWORK_ERROR
        if isinstance(payload, dict) and payload.get("status") == "ok":
            return ProbeOutcome.VALID
        return ProbeOutcome.INVALID
    return ProbeOutcome.NETWORK_ERROR


@dataclass(slots=True)
class Selection:
    """Outcome of ``select_usable``: a credential or the aggregated failures."""

    credential: Credential | None
    updates: list[CredentialUpdate] = field(default_factory=list)
    failures: dict[str, ProbeOutcome] = field(default_factory=dict)

    @property
    def exhausted(self) -> bool:
        return self.credential is None

    @property
    def all_rate_limited(self) -> bool:
        return (
            self.exhausted
            and bool(self.failures)
            and all(outcome is ProbeOutcome.RATE_LIMITED for outcome in self.failures.values())
        )


class StartupMode(str, Enum):
    NORMAL = "normal"
    LIMITED = "limited"


@dataclass(slots=True)
class StartupReport:
    mode: StartupMode
    key_id: str | None = None
    failures: dict[str, ProbeOutcome] = field(default_factory=dict)

    @property
    def ingestion_enabled(self) -> bool:
        return self.mode is StartupMode.NORMAL


class CredentialPool:
    """Own the configured API keys and hand out usable ones in priority order."""

    def __init__(
        self,
        secrets: Iterable[str],
        client: httpx.AsyncClient,
        settings: CredentialSettings | None = None,
        *,
        probe_url: str = "https://newsapi.org/v2/everything",
        state_store: StateStore | None = None,
        clock: Callable[[], datetime] = utcnow,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.settings = settings or CredentialSettings()
        self.client = client
        self.probe_url = probe_url
        self.state_store = state_store
        self.clock = clock
        self.logger = logger or component_logger("credentials")
        self._credentials: list[Credential] = []
        for index, secret in enumerate(dict.fromkeys(s.strip() for s in secrets if s.strip())):
            credential = Credential(secret=secret, priority=index)
            if self.state_store is not None:
                self.state_store.load_credential(credential)
            self._credentials.append(credential)
        self.logger.info("credentials_initialised", count=len(self._credentials))

    @property
    def credentials(self) -> list[Credential]:
        return list(self._credentials)

    @property
    def empty(self) -> bool:
        return not self._credentials

    @property
    def cooldown(self) -> timedelta:
        return timedelta(seconds=self.settings.rate_limit_cooldown_seconds)

    def get(self, key_id: str) -> Credential | None:
        for credential in self._credentials:
            if credential.key_id == key_id:
                return credential
        return None

    # ------------------------------------------------------------------
    # Probing and selection
    # ------------------------------------------------------------------
    async def validate(self, credential: Credential) -> ProbeOutcome:
        """Issue a minimal probe request; never raises for expected failure classes."""

        try:
            response = await self.client.get(
                self.probe_url,
                params={"q": "test", "pageSize": 1},
                headers={"X-Api-Key": credential.secret},
                timeout=self.settings.probe_timeout,
            )
        except httpx.HTTPError as exc:
            self.logger.warning("credential_probe_error", key_id=credential.key_id, error=str(exc))
            return ProbeOutcome.NETWORK_ERROR
        outcome = classify_response(response)
        self.logger.debug("credential_probed", key_id=credential.key_id, outcome=outcome.value)
        return outcome

    def _is_stale(self, credential: Credential, now: datetime) -> bool:
        if credential.status is CredentialStatus.UNKNOWN or credential.last_checked is None:
            return True
        age = now - credential.last_checked
        return age >= timedelta(seconds=self.settings.probe_interval_seconds)

    async def select_usable(self, credentials: Iterable[Credential] | None = None) -> Selection:
        """Try credentials in priority order and stop at the first valid one.

        Known-invalid or cooling-down credentials whose status is still fresh are
        skipped without a probe. The returned updates are proposals; callers hand
        them to :meth:`apply`.
        """

        now = self.clock()
        pool = sorted(credentials if credentials is not None else self._credentials, key=lambda c: c.priority)
        selection = Selection(credential=None)
        for credential in pool:
            stale = self._is_stale(credential, now)
            if not stale:
                if credential.status is CredentialStatus.INVALID:
                    selection.failures[credential.key_id] = ProbeOutcome.INVALID
                    continue
                if credential.status is CredentialStatus.RATE_LIMITED and credential.in_cooldown(now):
                    selection.failures[credential.key_id] = ProbeOutcome.RATE_LIMITED
                    continue
                if credential.status is CredentialStatus.VALID:
                    selection.credential = credential
                    return selection
            outcome = await self.validate(credential)
            selection.updates.append(
                CredentialUpdate(
                    key_id=credential.key_id,
                    outcome=outcome,
                    at=self.clock(),
                    probe=True,
                )
            )
            if outcome is ProbeOutcome.VALID:
                selection.credential = credential
                return selection
            selection.failures[credential.key_id] = outcome
        return selection

    async def recheck_invalid(self) -> list[CredentialUpdate]:
        """Re-probe invalid credentials whose last check is older than the probe interval.

        Lets a key disabled by a run of failures (an outage, say) come back once the
        API answers again. Returns proposals for :meth:`apply`.
        """

        now = self.clock()
        updates: list[CredentialUpdate] = []
        for credential in self._credentials:
            if credential.status is CredentialStatus.INVALID and self._is_stale(credential, now):
                selection = await self.select_usable([credential])
                updates.extend(selection.updates)
        if updates:
            self.logger.info(
                "invalid_credentials_rechecked",
                outcomes={update.key_id: update.outcome.value for update in updates},
            )
        return updates

    async def startup_check(self) -> StartupReport:
        """Run selection once at process start.

        Raises ``NoCredentialsConfigured`` for an empty pool and ``CredentialsRejected``
        when nothing works for reasons other than rate limiting. All-rate-limited
        returns a LIMITED report so the service can start with ingestion disabled.
        """

        if self.empty:
            self.logger.error("no_credentials_configured")
            raise NoCredentialsConfigured()
        selection = await self.select_usable()
        self.apply(selection.updates)
        if selection.credential is not None:
            self.logger.info("startup_credential_ok", key_id=selection.credential.key_id)
            return StartupReport(
                mode=StartupMode.NORMAL,
                key_id=selection.credential.key_id,
                failures=dict(selection.failures),
            )
        if selection.all_rate_limited:
            self.logger.warning("startup_limited_mode", failures=len(selection.failures))
            return StartupReport(mode=StartupMode.LIMITED, failures=dict(selection.failures))
        failures = {key_id: outcome.value for key_id, outcome in selection.failures.items()}
        self.logger.error("startup_credentials_rejected", failures=failures)
        raise CredentialsRejected(failures)

    def candidates(self) -> list[Credential]:
        """Usable credentials for a fetch: valid first, then by health and priority."""

        now = self.clock()
        usable = [
            c
            for c in self._credentials
            if c.status is not CredentialStatus.INVALID and not c.in_cooldown(now)
        ]
        return sorted(
            usable,
            key=lambda c: (
                c.status is not CredentialStatus.VALID,
                -c.health_score,
                c.priority,
            ),
        )

    def best_available(self) -> Credential | None:
        candidates = self.candidates()
        return candidates[0] if candidates else None

    # ------------------------------------------------------------------
    # State mutation (single writer: the orchestrator)
    # ------------------------------------------------------------------
    def apply(self, updates: Iterable[CredentialUpdate]) -> None:
        for update in updates:
            credential = self.get(update.key_id)
            if credential is None:
                self.logger.warning("unknown_credential_update", key_id=update.key_id)
                continue
            self._apply_one(credential, update)
            if self.state_store is not None:
                self.state_store.save_credential(credential)

    def _apply_one(self, credential: Credential, update: CredentialUpdate) -> None:
        if update.probe:
            credential.last_checked = update.at
        if update.counts_as_request:
            credential.last_used = update.at
            credential.daily_usage += 1

        if update.outcome is ProbeOutcome.VALID:
            credential.status = CredentialStatus.VALID
            credential.successful_requests += int(not update.probe)
            credential.consecutive_failures = 0
            credential.rate_limit_reset = None
            credential.health_score = min(100, credential.health_score + (5 if update.probe else 2))
        elif update.outcome is ProbeOutcome.RATE_LIMITED:
            credential.status = CredentialStatus.RATE_LIMITED
            credential.rate_limited_count += 1
            credential.rate_limit_reset = update.at + self.cooldown
            credential.health_score = max(0, credential.health_score - 20)
            self.logger.warning(
                "credential_rate_limited",
                key_id=credential.key_id,
                cooldown_until=credential.rate_limit_reset.isoformat(),
            )
        elif update.outcome is ProbeOutcome.INVALID:
            credential.status = CredentialStatus.INVALID
            credential.health_score = 0
            self.logger.error("credential_invalid", key_id=credential.key_id)
        else:
            credential.consecutive_failures += 1
            credential.health_score = max(0, credential.health_score - 10)
            if credential.consecutive_failures >= self.settings.max_consecutive_failures:
                credential.status = CredentialStatus.INVALID
                self.logger.error(
                    "credential_disabled_after_failures",
                    key_id=credential.key_id,
                    failures=credential.consecutive_failures,
                )

    def mark_invalid(self, key_id: str, reason: str) -> bool:
        credential = self.get(key_id)
        if credential is None:
            return False
        credential.status = CredentialStatus.INVALID
        credential.health_score = 0
        self.logger.error("credential_marked_invalid", key_id=key_id, reason=reason)
        if self.state_store is not None:
            self.state_store.save_credential(credential)
        return True

    def reset_usage(self) -> None:
        """Daily counter reset; health and failure streaks are kept."""

        for credential in self._credentials:
            credential.daily_usage = 0
            credential.successful_requests = 0
            credential.rate_limited_count = 0
            if self.state_store is not None:
                self.state_store.save_credential(credential)
        self.logger.info("credential_usage_reset", count=len(self._credentials))

    async def force_revalidate(self) -> dict[str, ProbeOutcome]:
        """Probe every credential regardless of staleness and apply the results."""

        results: dict[str, ProbeOutcome] = {}
        updates: list[CredentialUpdate] = []
        for credential in self._credentials:
            outcome = await self.validate(credential)
            results[credential.key_id] = outcome
            updates.append(
                CredentialUpdate(key_id=credential.key_id, outcome=outcome, at=self.clock(), probe=True)
            )
        self.apply(updates)
        return results

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------
    def statuses(self) -> list[dict[str, Any]]:
        return [credential.describe() for credential in sorted(self._credentials, key=lambda c: c.priority)]

    def usage_statistics(self) -> dict[str, dict[str, Any]]:
        stats: dict[str, dict[str, Any]] = {}
        for credential in self._credentials:
            requests = credential.daily_usage
            stats[credential.key_id] = {
                "daily_usage": requests,
                "success_rate": (credential.successful_requests / requests * 100) if requests else 0.0,
                "rate_limit_events": credential.rate_limited_count,
                "rate_limit_reset": credential.rate_limit_reset,
            }
        return stats

    def health_summary(self) -> dict[str, int]:
        now = self.clock()
        total = len(self._credentials)
        healthy = sum(
            1
            for c in self._credentials
            if c.status is CredentialStatus.VALID and not c.in_cooldown(now)
        )
        rate_limited = sum(1 for c in self._credentials if c.status is CredentialStatus.RATE_LIMITED)
        invalid = sum(1 for c in self._credentials if c.status is CredentialStatus.INVALID)
        average = round(sum(c.health_score for c in self._credentials) / total) if total else 0
        return {
            "total_keys": total,
            "healthy_keys": healthy,
            "rate_limited_keys": rate_limited,
            "invalid_keys": invalid,
            "average_health_score": average,
        }


__all__ = [
    "CredentialPool",
    "Selection",
    "StartupMode",
    "StartupReport",
    "classify_response",
    "error_code",
]
