"""
Deploy Monitor - Test Fixtures
==============================

Shared pytest fixtures for all tests.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from deploy_monitor.core.alerts.manager import AlertManager
from deploy_monitor.core.alerts.notifications import NotificationDispatcher
from deploy_monitor.core.analytics.engine import AnalyticsEngine
from deploy_monitor.core.nerve_center.websocket_hub import SubscriptionBroadcaster
from deploy_monitor.core.pipeline.orchestrator import PipelineOrchestrator
from deploy_monitor.core.storage import PersistenceStore

from fakes import FakeClock, RecordingChannel

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# ==========================================================================
# Component Fixtures
# ==========================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def store() -> AsyncGenerator[PersistenceStore, None]:
    """Fresh in-memory store per test."""
    store = PersistenceStore(TEST_DATABASE_URL)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def recorder() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def broadcaster() -> SubscriptionBroadcaster:
    return SubscriptionBroadcaster()


@pytest.fixture
def dispatcher(broadcaster: SubscriptionBroadcaster, recorder: RecordingChannel) -> NotificationDispatcher:
    dispatcher = NotificationDispatcher(broadcaster=broadcaster)
    dispatcher.register(recorder)
    return dispatcher


@pytest_asyncio.fixture
async def alert_manager(
    store: PersistenceStore,
    dispatcher: NotificationDispatcher,
    clock: FakeClock,
) -> AsyncGenerator[AlertManager, None]:
    manager = AlertManager(store, dispatcher, clock=clock)
    await manager.initialize()
    yield manager
    await manager.drain()


@pytest.fixture
def analytics(store: PersistenceStore, clock: FakeClock) -> AnalyticsEngine:
    return AnalyticsEngine(store, clock=clock)


@pytest_asyncio.fixture
async def orchestrator(
    store: PersistenceStore,
    alert_manager: AlertManager,
    analytics: AnalyticsEngine,
    broadcaster: SubscriptionBroadcaster,
    clock: FakeClock,
) -> AsyncGenerator[PipelineOrchestrator, None]:
    orchestrator = PipelineOrchestrator(
        store,
        alert_manager,
        analytics,
        broadcaster,
        run_timeout_seconds=300,
        clock=clock,
    )
    yield orchestrator
    await orchestrator.stop_monitoring()
    await orchestrator.drain()
