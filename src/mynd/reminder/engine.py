"""ReminderEngine -- 单个用户的提醒引擎装配与事件循环

装配 Store、DedupStore、Notification Port、准入控制器、恢复器与等级引擎。
通知回调、倒计时结束与周期性恢复节拍都只向事件队列投递，
由唯一的 drain 循环串行处理。
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel

from . import timer
from .admission import AdmissionController
from .config import EngineConfig, load_engine_config
from .dedup import DedupStore
from .leveling import LevelingEngine
from .models import (
    CompletionResult,
    DeliveredNotification,
    NotificationAction,
    ReconcileResult,
    ReminderPrompt,
    Task,
    UserResponse,
)
from .notification_port import NotificationPort, Subscription
from .projection import TaskView
from .recovery import RecoveryReconciler
from .signals import SignalHub
from .store import StoreGroup
from .timer import CountdownSample

log = structlog.get_logger()


class CountdownFinished(BaseModel):
    """倒计时归零（内部事件）"""

    task_id: str


class ReconcileTick(BaseModel):
    """周期性恢复节拍（内部事件）"""


EngineEvent = DeliveredNotification | UserResponse | CountdownFinished | ReconcileTick


class ReminderEngine:
    """单用户提醒引擎"""

    def __init__(
        self,
        owner_id: str,
        stores: StoreGroup,
        port: NotificationPort,
        config: EngineConfig | None = None,
        signals: SignalHub | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.owner_id = owner_id
        self.config = config or load_engine_config()
        self.signals = signals or SignalHub()
        self._stores = stores
        self._port = port
        self._clock = clock
        self._sleep = sleep

        self.view = TaskView()
        self.dedup = DedupStore(stores.kv_store, clock, self.config.dedup_window_ms)
        self.leveling = LevelingEngine(
            stores.level_store, stores.task_store, self.signals, clock
        )
        self.controller = AdmissionController(
            stores,
            self.dedup,
            port,
            view=self.view,
            leveling=self.leveling,
            clock=clock,
            default_interval=self.config.default_interval_minutes,
        )
        self.reconciler = RecoveryReconciler(
            stores.task_store, self.controller, self.signals, clock
        )

        self._events: asyncio.Queue[EngineEvent] = asyncio.Queue()
        self._subscriptions: list[Subscription] = []
        self._drain_task: asyncio.Task | None = None
        self._reconcile_task: asyncio.Task | None = None
        self._countdown_task: asyncio.Task | None = None
        # (task_id, start_time) 当前倒计时跟随的 ACTIVE 周期
        self._countdown_key: tuple[str, datetime] | None = None
        self.latest_sample: CountdownSample | None = None

    @property
    def running(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    async def start(self) -> ReconcileResult:
        """订阅通知回调、启动事件循环并执行一次前台恢复"""
        self._subscriptions.append(self._port.subscribe_delivered(self._enqueue))
        self._subscriptions.append(self._port.subscribe_user_response(self._enqueue))
        self._drain_task = asyncio.create_task(self._drain())
        if self.config.reconcile_interval_s > 0:
            self._reconcile_task = asyncio.create_task(self._reconcile_ticks())

        log.info(
            "reminder_engine_started",
            owner_id=self.owner_id,
            reconcile_interval_s=self.config.reconcile_interval_s,
        )
        return await self.on_foreground()

    async def on_foreground(self) -> ReconcileResult:
        """前台切换：刷新快照 -> 恢复 -> 跟随已准入任务"""
        await self.controller.refresh(self.owner_id)
        result = await self.reconciler.reconcile(self.owner_id)
        await self._follow_admitted()
        return result

    async def wait_idle(self) -> None:
        """等待已入队的事件全部处理完毕"""
        await self._events.join()

    async def close(self) -> None:
        """取消订阅、停止后台任务并标记控制器已销毁"""
        self.controller.close()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

        for task in (self._countdown_task, self._reconcile_task, self._drain_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._countdown_task = None
        self._reconcile_task = None
        self._drain_task = None
        self._countdown_key = None
        log.info("reminder_engine_closed", owner_id=self.owner_id)

    # ============================================================
    # 用户意图（UI 层入口）
    # ============================================================

    async def create_task(self, title: str, **kwargs: Any) -> Task | None:
        task = await self.controller.create_task(self.owner_id, title, **kwargs)
        await self._follow_admitted()
        return task

    async def update_task(self, task_id: str, **kwargs: Any) -> Task | None:
        task = await self.controller.update_task(task_id, **kwargs)
        await self._follow_admitted()
        return task

    async def complete_task(self, task_id: str) -> CompletionResult:
        result = await self.controller.complete_task(task_id)
        await self._follow_admitted()
        return result

    async def delete_task(self, task_id: str) -> bool:
        deleted = await self.controller.delete_task(task_id)
        await self._follow_admitted()
        return deleted

    async def mark_prompt_displayed(self, task_id: str) -> bool:
        return await self.controller.mark_prompt_displayed(task_id)

    async def handle_user_response(self, response: UserResponse) -> None:
        """处理用户在通知上的动作"""
        action = response.action
        if action == NotificationAction.COMPLETE:
            await self.controller.complete_task(response.task_id)
        elif action == NotificationAction.RESCHEDULE:
            await self.controller.reschedule_task_notification(
                response.task_id, response.interval_index
            )
            await self.controller.admit_next(self.owner_id)
        elif action == NotificationAction.DELETE:
            await self.controller.delete_task(response.task_id)
        else:
            task = await self.controller.get_task(response.task_id)
            if task is not None and task.owner_id == self.owner_id:
                await self.signals.publish(
                    self.owner_id,
                    ReminderPrompt(
                        owner_id=self.owner_id,
                        current_reminder_task=task,
                        reason="opened",
                    ),
                )

    # ============================================================
    # 事件循环
    # ============================================================

    def _enqueue(self, event: EngineEvent) -> None:
        self._events.put_nowait(event)

    async def _drain(self) -> None:
        while True:
            event = await self._events.get()
            try:
                with structlog.contextvars.bound_contextvars(
                    owner_id=self.owner_id, engine_event=type(event).__name__
                ):
                    await self._handle_event(event)
            except Exception:
                log.exception(
                    "engine_event_failed",
                    owner_id=self.owner_id,
                    event_type=type(event).__name__,
                )
            finally:
                self._events.task_done()

    async def _handle_event(self, event: EngineEvent) -> None:
        if self.controller.closed:
            return
        if isinstance(event, DeliveredNotification):
            await self.reconciler.handle_expiry(event.task_id, reason="delivered")
        elif isinstance(event, CountdownFinished):
            await self.reconciler.handle_expiry(event.task_id, reason="countdown")
        elif isinstance(event, UserResponse):
            await self.handle_user_response(event)
        elif isinstance(event, ReconcileTick):
            await self.reconciler.reconcile(self.owner_id)
        await self._follow_admitted()

    async def _reconcile_ticks(self) -> None:
        while True:
            await self._sleep(self.config.reconcile_interval_s)
            self._enqueue(ReconcileTick())

    # ============================================================
    # 倒计时
    # ============================================================

    async def _follow_admitted(self) -> None:
        """让倒计时跟随当前已准入任务的 ACTIVE 周期"""
        if self.controller.closed:
            return
        admitted = await self.controller.admitted_task(self.owner_id)
        key = None
        if admitted is not None and admitted.timer.start_time is not None:
            key = (admitted.task_id, admitted.timer.start_time)
        if key == self._countdown_key:
            return

        if self._countdown_task is not None and not self._countdown_task.done():
            self._countdown_task.cancel()
        self._countdown_task = None
        self._countdown_key = key
        self.latest_sample = None

        if admitted is not None and key is not None:
            self._countdown_task = asyncio.create_task(self._run_countdown(admitted))

    async def _run_countdown(self, task: Task) -> None:
        async for current in timer.countdown(
            task.timer, self._clock, self.config.countdown_tick_s, self._sleep
        ):
            self.latest_sample = current
        self._enqueue(CountdownFinished(task_id=task.task_id))
