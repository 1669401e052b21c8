"""Typer CLI entrypoint for celebwire."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional

import httpx
import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, PipelineConfig
from .engine import BatchPlanner, CacheLayer, CredentialPool, Deduplicator, FetchAudit, FetchExecutor
from .engine.store import (
    ArticleRepository,
    FetchLogRepository,
    MemoryArticleRepository,
    MemoryFetchLogRepository,
    MongoArticleRepository,
    MongoFetchLogRepository,
)
from .errors import CredentialsRejected, NoCredentialsConfigured, ValidationError
from .infra import MongoManager, SQLiteManager, StateStore
from .logging_conf import configure_logging, default_log_path, tail_log
from .models import FetchCycleResult, FetchStatus
from .orchestrator import Orchestrator, TriggerSource
from .queries import NewsQueryService
from .roster import EntityRoster, MongoRoster, StaticRoster
from .scheduler import APSchedulerAdapter

app = typer.Typer(help="celebwire news ingestion pipeline", no_args_is_help=True, rich_markup_mode=None)
fetch_app = typer.Typer(name="fetch", help="Fetch cycles and audit history", no_args_is_help=True)
keys_app = typer.Typer(name="keys", help="API credential health", no_args_is_help=True)
cache_app = typer.Typer(name="cache", help="Response cache administration", no_args_is_help=True)
news_app = typer.Typer(name="news", help="Read stored articles through the cache", no_args_is_help=True)
log_app = typer.Typer(name="log", help="Log file helpers", no_args_is_help=True)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    config: PipelineConfig
    orchestrator: Orchestrator
    queries: NewsQueryService
    scheduler: APSchedulerAdapter
    mongo: MongoManager | None = None
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def aclose(self) -> None:
        for closer in reversed(self.closers):
            await closer()


def _build_stores(
    config: PipelineConfig, closers: list[Callable[[], Awaitable[None]]]
) -> tuple[ArticleRepository, FetchLogRepository, EntityRoster, MongoManager | None]:
    static_roster = StaticRoster(config.roster.entities)
    if config.storage.backend == "memory":
        return MemoryArticleRepository(), MemoryFetchLogRepository(), static_roster, None

    mongo = MongoManager(config.storage.mongo_uri, config.storage.database)
    closers.append(mongo.close)
    roster: EntityRoster = static_roster
    if config.roster.source == "mongodb":
        roster = MongoRoster(mongo, config.roster.collection)
    return MongoArticleRepository(mongo), MongoFetchLogRepository(mongo), roster, mongo


def build_state(verbose: bool) -> AppState:
    repository = ConfigRepository()
    config = repository.load()
    configure_logging(verbose=verbose)
    closers: list[Callable[[], Awaitable[None]]] = []

    client = httpx.AsyncClient()
    closers.append(client.aclose)
    storage = SQLiteManager()
    state_store = StateStore(storage, repository.state_path())

    async def _close_storage() -> None:
        storage.close_all()

    closers.append(_close_storage)
    articles, fetch_logs, roster, mongo = _build_stores(config, closers)

    cache = CacheLayer.from_settings(config.cache)
    closers.append(cache.close)
    pool = CredentialPool(
        config.credentials.api_keys,
        client,
        config.credentials,
        probe_url=config.fetch.base_url,
        state_store=state_store,
    )
    orchestrator = Orchestrator(
        config,
        roster=roster,
        pool=pool,
        planner=BatchPlanner(config.batching.batch_size),
        executor=FetchExecutor(client, config.fetch),
        deduplicator=Deduplicator(articles),
        cache=cache,
        audit=FetchAudit(fetch_logs, interval=config.next_due_interval()),
        state_store=state_store,
    )
    return AppState(
        repository=repository,
        config=config,
        orchestrator=orchestrator,
        queries=NewsQueryService(articles, cache),
        scheduler=APSchedulerAdapter(config.schedule),
        mongo=mongo,
        closers=closers,
    )


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _run(state: AppState, factory: Callable[[], Awaitable[Any]]) -> Any:
    async def runner() -> Any:
        try:
            return await factory()
        finally:
            await state.aclose()

    return asyncio.run(runner())


def _close(state: AppState) -> None:
    asyncio.run(state.aclose())


async def _startup_or_exit(state: AppState) -> None:
    if state.mongo is not None:
        await state.mongo.ensure_indexes()
    try:
        await state.orchestrator.startup()
    except NoCredentialsConfigured:
        console.print("No API keys configured. Set CELEBWIRE_API_KEYS or credentials.api_keys.", style="red")
        raise typer.Exit(code=1)
    except CredentialsRejected as exc:
        console.print(f"Every API key was rejected: {exc.failures}", style="red")
        raise typer.Exit(code=1)


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, datetime):
        return value.isoformat(timespec="seconds")
    return str(value)


def _render_cycles(results: Iterable[FetchCycleResult], title: str) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    for column in ("Fetched", "Status", "Trigger", "Batch", "New", "Dupes", "API calls", "ms", "Error"):
        table.add_column(column)
    for result in results:
        batch = f"{result.batch_index + 1}/{result.total_batches}" if result.batch_index is not None else "-"
        table.add_row(
            _fmt(result.fetched_at),
            result.status.value,
            result.trigger,
            batch,
            str(result.new_articles_added),
            str(result.duplicates_found),
            str(result.api_calls_used),
            str(result.duration_ms),
            _fmt(result.error),
        )
    return table


def _render_mapping(mapping: dict[str, Any], title: str) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    table.add_column("Field")
    table.add_column("Value")
    for key, value in mapping.items():
        table.add_row(key, _fmt(value))
    return table


app.add_typer(fetch_app, name="fetch")
app.add_typer(keys_app, name="keys")
app.add_typer(cache_app, name="cache")
app.add_typer(news_app, name="news")
app.add_typer(log_app, name="log")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging", is_flag=True)
) -> None:
    ctx.obj = build_state(verbose)


# ----------------------------------------------------------------------
# fetch
# ----------------------------------------------------------------------
@fetch_app.command("run", help="Run one fetch cycle now.")
def fetch_run(ctx: typer.Context) -> None:
    state = _get_state(ctx)

    async def run():
        await _startup_or_exit(state)
        return await state.orchestrator.run_cycle(TriggerSource.MANUAL)

    outcome = _run(state, run)
    if not outcome.accepted:
        console.print(f"Fetch rejected ({outcome.reason}); stage: {outcome.stage.value}", style="yellow")
        raise typer.Exit(code=1)
    console.print(_render_cycles([outcome.result], "Fetch cycle"))
    if outcome.result.status is FetchStatus.FAILED:
        raise typer.Exit(code=1)


@fetch_app.command("status", help="Show the latest cycle and rotation position.")
def fetch_status(ctx: typer.Context) -> None:
    state = _get_state(ctx)

    async def read():
        audit = state.orchestrator.audit
        return await audit.latest(), await audit.is_fetch_due(), state.orchestrator.status()

    latest, due, status = _run(state, read)
    if latest is None:
        console.print("No fetch cycle recorded yet.", style="yellow")
    else:
        console.print(_render_cycles([latest], "Latest cycle"))
    rotation = status["rotation"]
    console.print(
        _render_mapping(
            {
                "fetch due": due,
                "rotation cursor": rotation["cursor"],
                "total batches": rotation["total_batches"],
                "next fetch due": latest.next_fetch_due if latest else None,
            },
            "Pipeline",
        )
    )


@fetch_app.command("history", help="Paginated fetch history.")
def fetch_history(
    ctx: typer.Context,
    status: Optional[FetchStatus] = typer.Option(None, "--status", help="Filter by cycle status"),
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(10, "--limit", min=1, max=100),
) -> None:
    state = _get_state(ctx)
    history = _run(state, lambda: state.orchestrator.audit.history(status, page, limit))
    if not history["items"]:
        console.print("No matching fetch cycles.", style="yellow")
        raise typer.Exit(code=0)
    console.print(
        _render_cycles(history["items"], f"Fetch history · page {history['page']}/{history['pages']} · {history['total']} total")
    )


@fetch_app.command("stats", help="Aggregate fetch statistics.")
def fetch_stats(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    stats = _run(state, state.orchestrator.audit.statistics)
    console.print(_render_mapping(stats, "Fetch statistics"))


# ----------------------------------------------------------------------
# keys
# ----------------------------------------------------------------------
def _render_credentials(rows: list[dict[str, Any]]) -> Table:
    table = Table(title="API keys", box=box.SIMPLE_HEAD)
    for column in ("Key", "Status", "Health", "Usage", "Failures", "Cooldown until", "Last checked"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            row["key_id"],
            row["status"],
            str(row["health_score"]),
            str(row["daily_usage"]),
            str(row["consecutive_failures"]),
            _fmt(row["rate_limit_reset"]),
            _fmt(row["last_checked"]),
        )
    return table


@keys_app.command("list", help="Per-key status and health.")
def keys_list(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    rows = state.orchestrator.pool.statuses()
    _close(state)
    if not rows:
        console.print("No API keys configured.", style="yellow")
        raise typer.Exit(code=0)
    console.print(_render_credentials(rows))
    console.print(_render_mapping(state.orchestrator.pool.health_summary(), "Summary"))


@keys_app.command("validate", help="Probe every key now.")
def keys_validate(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    outcomes = _run(state, state.orchestrator.revalidate_credentials)
    console.print(_render_mapping(outcomes, "Validation"))


@keys_app.command("reset", help="Reset daily usage counters.")
def keys_reset(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    _run(state, state.orchestrator.reset_credential_usage)
    console.print("Usage counters reset.", style="green")


@keys_app.command("best", help="Show the key the next fetch would use.")
def keys_best(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    best = state.orchestrator.pool.best_available()
    _close(state)
    if best is None:
        console.print("No usable API key available.", style="red")
        raise typer.Exit(code=1)
    console.print(_render_mapping(best.describe(), "Best available key"))


# ----------------------------------------------------------------------
# cache
# ----------------------------------------------------------------------
@cache_app.command("stats", help="Hit/miss counters and size.")
def cache_stats(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    stats = _run(state, state.orchestrator.cache.stats)
    console.print(_render_mapping(stats, "Cache"))


@cache_app.command("clear", help="Clear all cached responses, or only a key prefix.")
def cache_clear(
    ctx: typer.Context,
    prefix: Optional[str] = typer.Option(None, "--prefix", help="e.g. 'news:' for news responses only"),
) -> None:
    state = _get_state(ctx)
    cache = state.orchestrator.cache
    removed = _run(state, (lambda: cache.invalidate(prefix)) if prefix else cache.clear)
    console.print(f"Removed {removed} cached entries.", style="green")


# ----------------------------------------------------------------------
# news
# ----------------------------------------------------------------------
def _render_articles(articles: list[dict[str, Any]], title: str) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    for column in ("Published", "Celebrity", "Source", "Title"):
        table.add_column(column)
    for article in articles:
        table.add_row(
            _fmt(article.get("publishedAt")),
            article.get("celebrity", "-"),
            (article.get("source") or {}).get("name") or "-",
            article.get("title", ""),
        )
    return table


def _query(state: AppState, factory: Callable[[], Awaitable[Any]]) -> Any:
    try:
        return _run(state, factory)
    except ValidationError as exc:
        console.print(str(exc), style="red")
        raise typer.Exit(code=2)


@news_app.command("list", help="List stored articles, newest first.")
def news_list(
    ctx: typer.Context,
    celebrity: Optional[str] = typer.Option(None, "--celebrity"),
    sentiment: Optional[str] = typer.Option(None, "--sentiment"),
    source: Optional[str] = typer.Option(None, "--source"),
    page: int = typer.Option(1, "--page"),
    limit: int = typer.Option(20, "--limit"),
) -> None:
    state = _get_state(ctx)
    response = _query(
        state,
        lambda: state.queries.list_articles(
            page=page, limit=limit, entity=celebrity, sentiment=sentiment, source=source
        ),
    )
    pagination = response["pagination"]
    console.print(
        _render_articles(
            response["articles"],
            f"Articles · page {pagination['page']}/{pagination['pages']} · {pagination['total']} total",
        )
    )


@news_app.command("search", help="Full-text search over titles and descriptions.")
def news_search(
    ctx: typer.Context,
    term: str = typer.Argument(...),
    page: int = typer.Option(1, "--page"),
    limit: int = typer.Option(20, "--limit"),
) -> None:
    state = _get_state(ctx)
    response = _query(state, lambda: state.queries.search(term, page=page, limit=limit))
    console.print(_render_articles(response["articles"], f"Search '{term}' · {response['pagination']['total']} hits"))


@news_app.command("trending", help="Celebrities with the most articles lately.")
def news_trending(
    ctx: typer.Context,
    days: int = typer.Option(7, "--days"),
    limit: int = typer.Option(10, "--limit"),
) -> None:
    state = _get_state(ctx)
    rows = _query(state, lambda: state.queries.trending(days=days, limit=limit))
    console.print(_render_mapping({row["celebrity"]: row["count"] for row in rows}, f"Trending · last {days} days"))


@news_app.command("stats", help="Article counts.")
def news_stats(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    stats = _query(state, state.queries.statistics)
    by_celebrity = stats.pop("articlesByCelebrity")
    console.print(_render_mapping(stats, "Articles"))
    if by_celebrity:
        console.print(_render_mapping({row["celebrity"]: row["count"] for row in by_celebrity}, "By celebrity"))


# ----------------------------------------------------------------------
# log
# ----------------------------------------------------------------------
@log_app.command("tail", help="Print the last lines of the pipeline log.")
def log_tail(lines: int = typer.Option(50, "--lines", "-n", min=1)) -> None:
    path = default_log_path()
    content = tail_log(path, lines)
    if not content:
        console.print(f"No log entries at {path}", style="yellow")
        raise typer.Exit(code=0)
    for line in content:
        console.print(line.rstrip("\n"), markup=False, highlight=False)


# ----------------------------------------------------------------------
# serve
# ----------------------------------------------------------------------
def _jobs_table(jobs: list[dict]) -> Table:
    table = Table(title="Scheduled jobs", box=box.SIMPLE_HEAD)
    for column in ("Job", "Next run", "Trigger"):
        table.add_column(column)
    for job in jobs:
        table.add_row(job["id"], _fmt(job["next_run_time"]), job["trigger"])
    return table


async def serve_forever(state: AppState, stop: asyncio.Event | None = None) -> None:
    """Start the timer jobs and keep running until ``stop`` is set."""

    orchestrator = state.orchestrator
    await _startup_or_exit(state)

    async def timer_tick() -> None:
        await orchestrator.run_cycle(TriggerSource.TIMER)

    scheduler = state.scheduler
    scheduler.schedule_fetch(timer_tick)
    scheduler.schedule_cleanup(orchestrator.cleanup)
    scheduler.schedule_usage_reset(orchestrator.reset_credential_usage)
    scheduler.start()
    console.print(_jobs_table(scheduler.list_jobs()))
    try:
        if state.config.schedule.run_initial_fetch and not orchestrator.limited:
            await orchestrator.run_initial_fetch_if_due()
        await (stop or asyncio.Event()).wait()
    finally:
        scheduler.shutdown()


@app.command("serve", help="Run the scheduler until interrupted.")
def serve(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    console.print("celebwire scheduler running; press Ctrl+C to stop.", style="green")
    try:
        _run(state, lambda: serve_forever(state))
    except KeyboardInterrupt:
        console.print("Stopped.", style="yellow")


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
