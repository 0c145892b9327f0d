"""
Shared fixtures: settings tuned for fast tests, a throwaway SQLite database
(aiosqlite), a private fakeredis server for the queues, and the full service
graph wired around fake collaborators.
"""

import asyncio

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from fakes import CARBON_SOURCES, DictCache, FakeSourceSearch, carbon_provider
from trustbrief.config import Settings
from trustbrief.database import create_tables, make_session_factory
from trustbrief.services.factory import build_services
from trustbrief.services.queue import WorkerRuntime, install_runtime


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        redis_url="",
        llm_max_attempts=2,
        llm_backoff_initial=0.0,
        llm_backoff_max=0.0,
        queue_max_attempts=2,
        # Retries go straight back on the queue
        queue_backoff_base=0.0,
        queue_backoff_max=0.0,
        queue_concurrency=2,
    )


@pytest_asyncio.fixture
async def session_factory(settings):
    engine = create_async_engine(settings.database_url)
    await create_tables(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def redis_connection():
    connection = fakeredis.FakeRedis(server=fakeredis.FakeServer())
    yield connection
    connection.flushall()


@pytest_asyncio.fixture
async def worker_runtime():
    """Install a WorkerRuntime on the test's loop: install(queues) routes rq jobs here."""
    loop = asyncio.get_running_loop()

    def install(queues):
        install_runtime(WorkerRuntime(loop, queues))

    yield install
    install_runtime(None)


@pytest_asyncio.fixture
async def make_services(settings, session_factory, redis_connection, worker_runtime):
    """
    Build the service graph around fake collaborators and register the stage
    handlers, as a worker process would. Everything built is closed at teardown.
    """
    built = []

    async def _make(provider=None, search=None):
        services = build_services(
            settings,
            session_factory,
            providers=[provider or carbon_provider()],
            search=search or FakeSourceSearch(CARBON_SOURCES),
            cache=DictCache(),
            redis_connection=redis_connection,
        )
        services.orchestrator.register_workers(settings.queue_concurrency)
        worker_runtime(services.queues)
        built.append(services)
        return services

    yield _make

    for services in built:
        await services.close()
