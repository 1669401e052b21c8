"""Shared builders: fake clock, stubbed search API and a wired in-memory pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

import httpx
import pytest

from celebwire.config import (
    BatchSettings,
    CacheSettings,
    ConfigLocator,
    ConfigRepository,
    CredentialSettings,
    FetchSettings,
    PipelineConfig,
    StorageSettings,
)
from celebwire.engine import BatchPlanner, CacheLayer, CredentialPool, Deduplicator, FetchAudit, FetchExecutor
from celebwire.engine.store import MemoryArticleRepository, MemoryFetchLogRepository
from celebwire.infra import SQLiteManager, StateStore
from celebwire.models import Entity
from celebwire.orchestrator import Orchestrator
from celebwire.roster import StaticRoster

ALPHA = "alpha-key-0001"


class FakeClock:
    """Injectable wall clock; ``advance`` moves it forward."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class MonotonicClock:
    """Injectable monotonic seconds for the cache."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


def raw_article(
    title: str,
    url: str | None = None,
    *,
    description: str = "",
    source: str = "Folha",
    published: str = "2026-01-05T10:00:00Z",
) -> dict[str, Any]:
    return {
        "source": {"id": None, "name": source},
        "author": "Redação",
        "title": title,
        "description": description,
        "url": url,
        "urlToImage": None,
        "publishedAt": published,
        "content": f"{title} content",
    }


def make_entities(count: int, prefix: str = "Celebrity") -> list[Entity]:
    return [Entity(id=f"c{index:03d}", name=f"{prefix} {index:03d}") for index in range(count)]


def ok_response(articles: list[dict[str, Any]], remaining: int | None = 95) -> httpx.Response:
    headers = {}
    if remaining is not None:
        headers = {"X-RateLimit-Remaining": str(remaining), "X-RateLimit-Reset": "1767614400"}
    return httpx.Response(
        200,
        json={"status": "ok", "totalResults": len(articles), "articles": articles},
        headers=headers,
    )


def error_response(status: int, code: str) -> httpx.Response:
    return httpx.Response(status, json={"status": "error", "code": code, "message": code})


class NewsApiStub:
    """Programmable stand-in for the external search API, keyed by API key.

    A behaviour is ``"ok"``, ``"rate_limited"``, ``"invalid"``, ``"server_error"``,
    ``"network"`` or a callable taking the request. A list of behaviours is
    consumed one per request, the last one sticking.
    """

    def __init__(self) -> None:
        self.behaviours: dict[str, Any] = {}
        self.requests: list[httpx.Request] = []
        self.articles: list[dict[str, Any]] = []

    def on(self, secret: str, behaviour: Any) -> "NewsApiStub":
        self.behaviours[secret] = behaviour
        return self

    def _next(self, secret: str) -> Any:
        behaviour = self.behaviours.get(secret, "ok")
        if isinstance(behaviour, list):
            return behaviour.pop(0) if len(behaviour) > 1 else behaviour[0]
        return behaviour

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        behaviour = self._next(request.headers.get("X-Api-Key", ""))
        if callable(behaviour):
            return behaviour(request)
        if behaviour == "ok":
            return ok_response(self.articles)
        if behaviour == "rate_limited":
            return error_response(429, "rateLimited")
        if behaviour == "invalid":
            return error_response(401, "apiKeyInvalid")
        if behaviour == "server_error":
            return error_response(500, "unexpectedError")
        if behaviour == "network":
            raise httpx.ConnectError("connection refused", request=request)
        raise AssertionError(f"unknown behaviour {behaviour!r}")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def searches(self, secret: str | None = None) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.url.params.get("q") != "test"
            and (secret is None or request.headers.get("X-Api-Key") == secret)
        ]

    def probes(self, secret: str | None = None) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.url.params.get("q") == "test"
            and (secret is None or request.headers.get("X-Api-Key") == secret)
        ]


@dataclass
class Pipeline:
    config: PipelineConfig
    orchestrator: Orchestrator
    pool: CredentialPool
    api: NewsApiStub
    articles: MemoryArticleRepository
    fetch_logs: MemoryFetchLogRepository
    audit: FetchAudit
    cache: CacheLayer
    state_store: StateStore
    clock: FakeClock
    cache_clock: MonotonicClock
    sleeps: list[float] = field(default_factory=list)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def cache_clock() -> MonotonicClock:
    return MonotonicClock()


@pytest.fixture
def api() -> NewsApiStub:
    return NewsApiStub()


@pytest.fixture
def http_client(api: NewsApiStub) -> httpx.AsyncClient:
    return api.client()


@pytest.fixture
def state_store(tmp_path: Path) -> Iterable[StateStore]:
    manager = SQLiteManager()
    yield StateStore(manager, tmp_path / "state" / "pipeline_state.db")
    manager.close_all()


@pytest.fixture
def build_pipeline(
    api: NewsApiStub,
    http_client: httpx.AsyncClient,
    state_store: StateStore,
    clock: FakeClock,
    cache_clock: MonotonicClock,
) -> Callable[..., Pipeline]:
    def _builder(
        *,
        secrets: Iterable[str] = (ALPHA,),
        entities: Iterable[Entity] | None = None,
        batch_size: int = 25,
        advance_on_failure: bool = True,
        retry_count: int = 2,
        max_per_entity: int = 0,
        articles: MemoryArticleRepository | None = None,
    ) -> Pipeline:
        config = PipelineConfig(
            credentials=CredentialSettings(api_keys=list(secrets)),
            batching=BatchSettings(batch_size=batch_size, advance_on_failure=advance_on_failure),
            fetch=FetchSettings(retry_count=retry_count, max_per_entity=max_per_entity),
            cache=CacheSettings(redis_url=None),
            storage=StorageSettings(backend="memory"),
        )
        sleeps: list[float] = []

        async def record_sleep(delay: float) -> None:
            sleeps.append(delay)

        pool = CredentialPool(
            config.credentials.api_keys,
            http_client,
            config.credentials,
            probe_url=config.fetch.base_url,
            state_store=state_store,
            clock=clock,
        )
        article_repo = articles or MemoryArticleRepository()
        fetch_logs = MemoryFetchLogRepository()
        cache = CacheLayer(config.cache, clock=cache_clock)
        audit = FetchAudit(fetch_logs, interval=timedelta(hours=24), clock=clock)
        orchestrator = Orchestrator(
            config,
            roster=StaticRoster(list(entities) if entities is not None else make_entities(3)),
            pool=pool,
            planner=BatchPlanner(batch_size),
            executor=FetchExecutor(http_client, config.fetch, clock=clock, sleep=record_sleep),
            deduplicator=Deduplicator(article_repo, clock=clock),
            cache=cache,
            audit=audit,
            state_store=state_store,
            clock=clock,
        )
        return Pipeline(
            config=config,
            orchestrator=orchestrator,
            pool=pool,
            api=api,
            articles=article_repo,
            fetch_logs=fetch_logs,
            audit=audit,
            cache=cache,
            state_store=state_store,
            clock=clock,
            cache_clock=cache_clock,
            sleeps=sleeps,
        )

    return _builder


@pytest.fixture
def temp_config_repository(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> ConfigRepository:
    monkeypatch.setenv("CELEBWIRE_HOME", str(tmp_path))
    for name in ("CELEBWIRE_API_KEYS", "CELEBWIRE_MONGO_URI", "CELEBWIRE_REDIS_URL"):
        monkeypatch.delenv(name, raising=False)
    return ConfigRepository(ConfigLocator(project_root=tmp_path))


@pytest.fixture(name="make_entities")
def make_entities_fixture() -> Callable[..., list[Entity]]:
    return make_entities


@pytest.fixture(name="raw_article")
def raw_article_fixture() -> Callable[..., dict[str, Any]]:
    return raw_article
