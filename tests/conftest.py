"""Shared test fixtures for the OutreachIQ job engine."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone

from config.settings import reset_settings
from database.session import create_engine_for, init_db, make_session_scope
from database.store import SqlJobStore, SqlMetricsStore, SqlRateWindowStore
from database.store_factory import Stores, reset_stores
from database.store_memory import InMemoryJobStore, InMemoryMetricsStore, InMemoryRateWindowStore
from job_queue.dispatcher import Dispatcher, HandlerRegistry
from job_queue.outcome import OutcomeRecorder
from job_queue.rate_limiter import ProviderLimits, RateLimiter
from job_queue.retry import RetryPolicy
from job_queue.scheduler import SchedulerLoop
from models.schemas import JobType


class FakeClock:
    """Callable clock the loops and reaper read instead of the wall clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_settings()
    reset_stores()
    yield
    reset_settings()
    reset_stores()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


def memory_stores() -> Stores:
    return Stores(
        jobs=InMemoryJobStore(),
        rate_windows=InMemoryRateWindowStore(),
        metrics=InMemoryMetricsStore(),
        backend="memory",
    )


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path):
    engine = create_engine_for(f"sqlite:///{tmp_path / 'jobs.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def stores(request, tmp_path):
    """Every store-level test runs against both backends."""
    if request.param == "memory":
        yield memory_stores()
        return

    engine = create_engine_for(f"sqlite:///{tmp_path / 'jobs.db'}")
    await init_db(engine)
    scope = make_session_scope(engine)
    yield Stores(
        jobs=SqlJobStore(scope),
        rate_windows=SqlRateWindowStore(scope),
        metrics=SqlMetricsStore(scope),
        backend="sql",
    )
    await engine.dispose()


@pytest.fixture
def registry() -> HandlerRegistry:
    """A registry with a no-op handler for every job type."""
    async def noop(payload: dict) -> None:
        return None

    reg = HandlerRegistry()
    for job_type in JobType:
        reg.register(job_type, noop)
    return reg


@pytest.fixture
def policy() -> RetryPolicy:
    """Deterministic backoff: no jitter."""
    return RetryPolicy(base_delay=30, max_delay=3600, jitter=0.0)


@pytest.fixture
def make_loop(clock, policy):
    """Build a SchedulerLoop over the given stores and registry."""
    def _make(stores: Stores, registry: HandlerRegistry, worker_id: str = "test:0",
              auto_pause_hook=None, **kwargs) -> SchedulerLoop:
        return SchedulerLoop(
            worker_id=worker_id,
            jobs=stores.jobs,
            rate_limiter=RateLimiter(stores.rate_windows),
            dispatcher=Dispatcher(registry),
            retry_policy=kwargs.pop("retry_policy", policy),
            recorder=OutcomeRecorder(stores.metrics, auto_pause_hook),
            provider_limits=kwargs.pop("provider_limits", ProviderLimits(default_daily_limit=100)),
            poll_interval=kwargs.pop("poll_interval", 0.01),
            persist_retry_attempts=kwargs.pop("persist_retry_attempts", 3),
            persist_retry_max_wait=0,
            clock=kwargs.pop("clock", clock),
            **kwargs,
        )
    return _make


def send_email_payload(**overrides) -> dict:
    payload = {
        "campaign_id": "camp-1",
        "campaign_lead_id": "cl-1",
        "lead_id": "lead-1",
        "inbox_id": "inbox-1",
        "inbox_email": "sales@acme-mail.io",
        "to_email": "prospect@example.com",
        "to_name": "Pat Prospect",
        "subject": "Quick question",
        "body_html": "<p>Hi Pat</p>",
    }
    payload.update(overrides)
    return payload


def verify_payload(**overrides) -> dict:
    payload = {"lead_id": "lead-1", "email": "prospect@example.com"}
    payload.update(overrides)
    return payload
