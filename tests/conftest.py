"""全局 pytest 配置 -- 临时 SQLite 数据库、假时钟与进程内通知 fixture"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from mynd.reminder.admission import AdmissionController
from mynd.reminder.dedup import DedupStore
from mynd.reminder.leveling import LevelingEngine
from mynd.reminder.models import Priority, Task, TaskStatus, TimerPhase, TimerState
from mynd.reminder.notification_port import LocalNotificationPort
from mynd.reminder.recovery import RecoveryReconciler
from mynd.reminder.signals import SignalHub
from mynd.reminder.store import StoreGroup, create_store_group

OWNER = "owner-1"
T0 = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def tmp_db_path(tmp_path: Path) -> Path:
    """提供临时 SQLite 数据库路径"""
    return tmp_path / "sqlite" / "test.db"


@pytest_asyncio.fixture
async def store_group(tmp_db_path: Path) -> AsyncGenerator[StoreGroup, None]:
    """提供已初始化的 Store 实例组"""
    group = await create_store_group(str(tmp_db_path))
    yield group
    await group.conn.close()


@pytest.fixture
def port(clock: FakeClock) -> LocalNotificationPort:
    return LocalNotificationPort(clock=clock)


@pytest.fixture
def dedup(store_group: StoreGroup, clock: FakeClock) -> DedupStore:
    return DedupStore(store_group.kv_store, clock)


@pytest.fixture
def signals() -> SignalHub:
    return SignalHub()


@pytest.fixture
def leveling(store_group: StoreGroup, signals: SignalHub, clock: FakeClock) -> LevelingEngine:
    return LevelingEngine(store_group.level_store, store_group.task_store, signals, clock)


@pytest.fixture
def controller(
    store_group: StoreGroup,
    dedup: DedupStore,
    port: LocalNotificationPort,
    leveling: LevelingEngine,
    clock: FakeClock,
) -> AdmissionController:
    return AdmissionController(store_group, dedup, port, leveling=leveling, clock=clock)


@pytest.fixture
def reconciler(
    store_group: StoreGroup,
    controller: AdmissionController,
    signals: SignalHub,
    clock: FakeClock,
) -> RecoveryReconciler:
    return RecoveryReconciler(store_group.task_store, controller, signals, clock)


@pytest.fixture
def make_task(clock: FakeClock) -> Callable[..., Task]:
    """构建 Task 的工厂，未指定的字段取合理默认值"""
    counter = {"n": 0}

    def _make(
        task_id: str | None = None,
        title: str | None = None,
        priority: Priority = Priority.MEDIUM,
        phase: TimerPhase = TimerPhase.IDLE,
        start_time: datetime | None = None,
        duration_minutes: int = 5,
        notification_id: str | None = None,
        completed_at: datetime | None = None,
        allowed_intervals: list[int] | None = None,
        status: TaskStatus = TaskStatus.PENDING,
        owner_id: str = OWNER,
        created_at: datetime | None = None,
        **kwargs,
    ) -> Task:
        counter["n"] += 1
        created = created_at or clock() + timedelta(seconds=counter["n"])
        return Task(
            task_id=task_id or f"task-{counter['n']:03d}",
            owner_id=owner_id,
            title=title or f"任务 {counter['n']}",
            priority=priority,
            allowed_intervals=allowed_intervals if allowed_intervals is not None else [5, 10],
            status=status,
            timer=TimerState(
                phase=phase,
                start_time=start_time,
                duration_minutes=duration_minutes,
                notification_id=notification_id,
                completed_at=completed_at,
            ),
            created_at=created,
            updated_at=created,
            **kwargs,
        )

    return _make


@pytest.fixture
def owner_id() -> str:
    return OWNER


@pytest.fixture
def insert_tasks(store_group: StoreGroup) -> Callable[..., Awaitable[None]]:
    """直接写入存储（绕过准入控制器）"""

    async def _insert(*tasks: Task) -> None:
        for task in tasks:
            await store_group.task_store.create_task(task)
        await store_group.conn.commit()

    return _insert
