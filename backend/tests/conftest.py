import random
import sys
import uuid
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.append(str(BASE_DIR))

from backend.config import Settings  # noqa: E402
from backend.core.engines import AutomationEngines, build_engines  # noqa: E402
from backend.services.notification_service import NotificationService  # noqa: E402
from backend.tests.fakes import (  # noqa: E402
    FakeDeviceProxy,
    FakeScheduler,
    FixedClock,
    InMemoryAutomationStore,
    RecordingSleep,
    add_device,
)


@pytest.fixture
def owner_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def store() -> InMemoryAutomationStore:
    return InMemoryAutomationStore()


@pytest.fixture
def proxy() -> FakeDeviceProxy:
    return FakeDeviceProxy()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def notifications() -> NotificationService:
    # no gateway: deliveries are logged and kept in history
    return NotificationService()


@pytest.fixture
def settings() -> Settings:
    return Settings(timezone="UTC", high_priority_threshold=7, execution_log_capacity=5)


@pytest.fixture
async def engines(
    store: InMemoryAutomationStore,
    proxy: FakeDeviceProxy,
    notifications: NotificationService,
    scheduler: FakeScheduler,
    settings: Settings,
    clock: FixedClock,
    sleep: RecordingSleep,
) -> AsyncGenerator[AutomationEngines]:
    container = build_engines(
        store,
        proxy,
        notifications,
        scheduler,  # type: ignore[arg-type]
        settings,
        clock=clock,
        rng=random.Random(7),
        sleep=sleep,
    )
    yield container
    await container.shutdown()


@pytest.fixture
def device(
    store: InMemoryAutomationStore, proxy: FakeDeviceProxy, owner_id: uuid.UUID
) -> uuid.UUID:
    return add_device(store, proxy, owner_id)
