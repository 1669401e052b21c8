from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from celebwire.config import CredentialSettings
from celebwire.engine.credentials import CredentialPool, StartupMode, classify_response
from celebwire.errors import CredentialsRejected, NoCredentialsConfigured
from celebwire.models import CredentialStatus, CredentialUpdate, ProbeOutcome, key_id_for

ALPHA = "alpha-key-0001"
ALPHA_ID = key_id_for(ALPHA)
BRAVO = "bravo-key-0002"
BRAVO_ID = key_id_for(BRAVO)


def make_pool(http_client, clock, secrets=(ALPHA, BRAVO), state_store=None, **settings) -> CredentialPool:
    return CredentialPool(
        secrets,
        http_client,
        CredentialSettings(**settings),
        state_store=state_store,
        clock=clock,
    )


@pytest.mark.parametrize(
    ("response", "expected"),
    [
        (httpx.Response(200, json={"status": "ok", "articles": []}), ProbeOutcome.VALID),
        (httpx.Response(429, json={"status": "error", "code": "rateLimited"}), ProbeOutcome.RATE_LIMITED),
        (httpx.Response(426, json={"status": "error", "code": "rateLimited"}), ProbeOutcome.RATE_LIMITED),
        (httpx.Response(401, json={"status": "error", "code": "apiKeyInvalid"}), ProbeOutcome.INVALID),
        (httpx.Response(400, json={"status": "error", "code": "apiKeyDisabled"}), ProbeOutcome.INVALID),
        (httpx.Response(200, json={"status": "error"}), ProbeOutcome.INVALID),
        (httpx.Response(500, json={"status": "error", "code": "unexpectedError"}), ProbeOutcome.NETWORK_ERROR),
        (httpx.Response(502, text="bad gateway"), ProbeOutcome.NETWORK_ERROR),
    ],
)
def test_classify_response(response: httpx.Response, expected: ProbeOutcome) -> None:
    assert classify_response(response) is expected


async def test_startup_without_credentials_is_fatal(http_client, clock) -> None:
    pool = make_pool(http_client, clock, secrets=())
    with pytest.raises(NoCredentialsConfigured):
        await pool.startup_check()


async def test_startup_all_rate_limited_enters_limited_mode(api, http_client, clock) -> None:
    api.on(ALPHA, "rate_limited").on(BRAVO, "rate_limited")
    pool = make_pool(http_client, clock)
    report = await pool.startup_check()
    assert report.mode is StartupMode.LIMITED
    assert not report.ingestion_enabled
    assert all(c.status is CredentialStatus.RATE_LIMITED for c in pool.credentials)


async def test_startup_all_invalid_is_fatal(api, http_client, clock) -> None:
    api.on(ALPHA, "invalid").on(BRAVO, "network")
    pool = make_pool(http_client, clock)
    with pytest.raises(CredentialsRejected) as excinfo:
        await pool.startup_check()
    assert excinfo.value.failures == {ALPHA_ID: "invalid", BRAVO_ID: "network_error"}


async def test_startup_falls_back_to_second_key(api, http_client, clock) -> None:
    api.on(ALPHA, "rate_limited")
    pool = make_pool(http_client, clock)
    report = await pool.startup_check()
    assert report.mode is StartupMode.NORMAL
    assert report.key_id == BRAVO_ID
    alpha, bravo = pool.credentials
    assert alpha.status is CredentialStatus.RATE_LIMITED
    assert alpha.rate_limit_reset == clock.now + timedelta(hours=1)
    assert alpha.health_score == 80
    assert alpha.consecutive_failures == 0
    assert bravo.status is CredentialStatus.VALID
    assert bravo.last_checked == clock.now


async def test_fresh_status_skips_probes(api, http_client, clock) -> None:
    api.on(ALPHA, "rate_limited")
    pool = make_pool(http_client, clock)
    await pool.startup_check()
    probes_before = len(api.probes())

    clock.advance(minutes=2)
    selection = await pool.select_usable()
    assert selection.credential is not None
    assert selection.credential.key_id == BRAVO_ID
    assert selection.updates == []
    assert len(api.probes()) == probes_before


async def test_cooldown_expiry_makes_key_eligible_again(api, http_client, clock) -> None:
    api.on(ALPHA, ["rate_limited", "ok"])
    pool = make_pool(http_client, clock)
    await pool.startup_check()
    assert [c.key_id for c in pool.candidates()] == [BRAVO_ID]

    clock.advance(hours=1, seconds=1)
    assert {c.key_id for c in pool.candidates()} == {ALPHA_ID, BRAVO_ID}
    selection = await pool.select_usable()
    pool.apply(selection.updates)
    assert selection.credential is not None
    assert selection.credential.key_id == ALPHA_ID
    assert pool.get(ALPHA_ID).status is CredentialStatus.VALID


async def test_three_consecutive_failures_invalidate_key(http_client, clock) -> None:
    pool = make_pool(http_client, clock)
    for _ in range(2):
        pool.apply([CredentialUpdate(ALPHA_ID, ProbeOutcome.NETWORK_ERROR, clock())])
    alpha = pool.get(ALPHA_ID)
    assert alpha.status is CredentialStatus.UNKNOWN
    assert alpha.health_score == 80
    pool.apply([CredentialUpdate(ALPHA_ID, ProbeOutcome.NETWORK_ERROR, clock())])
    assert alpha.status is CredentialStatus.INVALID
    assert alpha not in pool.candidates()


async def test_recheck_invalid_revives_key_once_status_is_stale(api, http_client, clock) -> None:
    pool = make_pool(http_client, clock)
    await pool.startup_check()
    for _ in range(3):
        pool.apply([CredentialUpdate(ALPHA_ID, ProbeOutcome.NETWORK_ERROR, clock())])
    assert pool.get(ALPHA_ID).status is CredentialStatus.INVALID

    clock.advance(minutes=1)
    assert await pool.recheck_invalid() == []

    clock.advance(minutes=5)
    updates = await pool.recheck_invalid()
    assert [(u.key_id, u.outcome, u.probe) for u in updates] == [(ALPHA_ID, ProbeOutcome.VALID, True)]
    pool.apply(updates)
    alpha = pool.get(ALPHA_ID)
    assert alpha.status is CredentialStatus.VALID
    assert alpha.consecutive_failures == 0
    assert [c.key_id for c in pool.candidates()][0] == ALPHA_ID


async def test_rate_limits_do_not_count_as_failures(http_client, clock) -> None:
    pool = make_pool(http_client, clock)
    for _ in range(5):
        pool.apply([CredentialUpdate(ALPHA_ID, ProbeOutcome.RATE_LIMITED, clock())])
    alpha = pool.get(ALPHA_ID)
    assert alpha.status is CredentialStatus.RATE_LIMITED
    assert alpha.consecutive_failures == 0
    assert alpha.rate_limited_count == 5
    assert alpha.health_score == 0


async def test_success_resets_failure_streak(http_client, clock) -> None:
    pool = make_pool(http_client, clock)
    pool.apply(
        [
            CredentialUpdate(ALPHA_ID, ProbeOutcome.NETWORK_ERROR, clock()),
            CredentialUpdate(ALPHA_ID, ProbeOutcome.NETWORK_ERROR, clock()),
            CredentialUpdate(ALPHA_ID, ProbeOutcome.VALID, clock()),
        ]
    )
    alpha = pool.get(ALPHA_ID)
    assert alpha.consecutive_failures == 0
    assert alpha.successful_requests == 1
    assert alpha.daily_usage == 3
    assert alpha.health_score == 82


async def test_candidates_prefer_valid_then_health(http_client, clock) -> None:
    pool = make_pool(http_client, clock, secrets=(ALPHA, BRAVO, "charlie-key-0003"))
    pool.apply(
        [
            CredentialUpdate(BRAVO_ID, ProbeOutcome.VALID, clock(), probe=True),
            CredentialUpdate(key_id_for("charlie-key-0003"), ProbeOutcome.INVALID, clock(), probe=True),
        ]
    )
    assert [c.key_id for c in pool.candidates()] == [BRAVO_ID, ALPHA_ID]
    assert pool.best_available().key_id == BRAVO_ID


async def test_reset_usage_keeps_health(http_client, clock) -> None:
    pool = make_pool(http_client, clock)
    pool.apply([CredentialUpdate(ALPHA_ID, ProbeOutcome.RATE_LIMITED, clock())])
    pool.reset_usage()
    alpha = pool.get(ALPHA_ID)
    assert alpha.daily_usage == 0
    assert alpha.rate_limited_count == 0
    assert alpha.health_score == 80


async def test_force_revalidate_probes_every_key(api, http_client, clock) -> None:
    api.on(BRAVO, "invalid")
    pool = make_pool(http_client, clock)
    outcomes = await pool.force_revalidate()
    assert outcomes == {ALPHA_ID: ProbeOutcome.VALID, BRAVO_ID: ProbeOutcome.INVALID}
    assert len(api.probes()) == 2
    summary = pool.health_summary()
    assert summary["healthy_keys"] == 1
    assert summary["invalid_keys"] == 1


async def test_probe_sends_key_header_not_query(api, http_client, clock) -> None:
    pool = make_pool(http_client, clock, secrets=(ALPHA,))
    await pool.validate(pool.credentials[0])
    request = api.probes()[0]
    assert request.headers["X-Api-Key"] == ALPHA
    assert request.url.params["pageSize"] == "1"
    assert "apiKey" not in request.url.params


async def test_state_survives_restart(api, http_client, clock, state_store) -> None:
    api.on(ALPHA, "rate_limited")
    pool = make_pool(http_client, clock, state_store=state_store)
    await pool.startup_check()

    restarted = make_pool(http_client, clock, state_store=state_store)
    alpha = restarted.get(ALPHA_ID)
    assert alpha.status is CredentialStatus.RATE_LIMITED
    assert alpha.rate_limit_reset == clock.now + timedelta(hours=1)
    assert restarted.get(BRAVO_ID).status is CredentialStatus.VALID


async def test_keys_sharing_a_prefix_keep_separate_state(api, http_client, clock, state_store) -> None:
    first, second = "sharedpfx-AAAA", "sharedpfx-BBBB"
    api.on(first, "invalid")
    pool = make_pool(http_client, clock, secrets=(first, second), state_store=state_store)
    report = await pool.startup_check()

    assert key_id_for(first) != key_id_for(second)
    assert report.key_id == key_id_for(second)
    assert pool.get(key_id_for(first)).status is CredentialStatus.INVALID
    assert pool.get(key_id_for(second)).status is CredentialStatus.VALID

    restarted = make_pool(http_client, clock, secrets=(first, second), state_store=state_store)
    assert restarted.get(key_id_for(first)).status is CredentialStatus.INVALID
    assert restarted.get(key_id_for(second)).status is CredentialStatus.VALID


async def test_secret_never_in_repr_or_description(http_client, clock) -> None:
    pool = make_pool(http_client, clock, secrets=(ALPHA,))
    credential = pool.credentials[0]
    assert ALPHA not in repr(credential)
    assert ALPHA not in str(credential.describe())
