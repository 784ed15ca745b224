import pytest

from prodgen_Server_API.app.core.config import reset_settings
from prodgen_Server_API.app.core.Infrastructure.kv_cache import InMemoryKeyValueCache
from prodgen_Server_API.app.core.Metrics.pipeline_metrics import PipelineMetrics, reset_pipeline_metrics
from prodgen_Server_API.app.core.Pipeline.job_store import InMemoryJobStore
from prodgen_Server_API.app.core.Pipeline.runners import reset_runner_registry
from prodgen_Server_API.app.core.Queue.memory_transport import InMemoryQueueTransport
from prodgen_Server_API.app.core.Queue.transport import BackoffPolicy, JobOptions
from prodgen_Server_API.app.core.Utils.time_utils import ManualClock

# 2023-11-14T22:13:20Z
START_MS = 1_700_000_000_000


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests with in-process backends")
    config.addinivalue_line("markers", "integration: Tests that run workers, the HTTP app or a real Redis")


_PIPELINE_ENV = (
    "REDIS_URL",
    "JOBS_DB_PATH",
    "ADMIN_API_TOKEN",
    "APP_ENCRYPTION_KEY",
    "PIPELINE_RUNNERS_MODULE",
    "DEDUP_STRATEGY",
    "DEDUP_WINDOW_MS",
    "CIRCUIT_STATE_BACKEND",
    "CIRCUIT_SUCCESS_DECAY",
    "JOB_MAX_ATTEMPTS",
    "JOB_BACKOFF_DELAY_MS",
)


@pytest.fixture(autouse=True)
def _reset_settings_and_env(monkeypatch):
    """Deterministic settings for every test.

    - In-process backends only (no REDIS_URL / JOBS_DB_PATH from the shell)
    - No cron and no embedded workers unless a test opts in
    - Settings, runner registry and metrics singletons reset around each test
    """
    for name in _PIPELINE_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("CRON_ENABLED", "false")
    monkeypatch.setenv("WORKERS_ENABLED", "false")
    reset_settings()
    reset_runner_registry()
    reset_pipeline_metrics()
    yield
    reset_settings()
    reset_runner_registry()
    reset_pipeline_metrics()


@pytest.fixture
def clock():
    return ManualClock(START_MS)


@pytest.fixture
def metrics():
    return PipelineMetrics()


@pytest.fixture
def job_options():
    return JobOptions(
        attempts=3,
        backoff=BackoffPolicy(type="exponential", delay_ms=60_000),
        timeout_ms=5_000,
        remove_on_complete=500,
        remove_on_fail=2000,
    )


@pytest.fixture
def store(clock):
    return InMemoryJobStore(clock)


@pytest.fixture
def transport(clock, job_options):
    return InMemoryQueueTransport(clock=clock, default_options=job_options, poll_interval_s=0.005)


@pytest.fixture
def cache(clock):
    return InMemoryKeyValueCache(clock)
