"""Notification Port -- 设备本地通知能力的抽象

schedule / cancel / subscribe_delivered / subscribe_user_response。
cancel 幂等：取消未知 id 不是错误。订阅返回可取消的 Subscription。

LocalNotificationPort 是进程内实现：记录已调度的通知，可选地按时长自动送达，
并提供 deliver()/respond() 注入回调事件。
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

import structlog
from pydantic import BaseModel

from .models import (
    DeliveredNotification,
    NotificationAction,
    NotificationPayload,
    Task,
    UserResponse,
)

log = structlog.get_logger()

DeliveredHandler = Callable[[DeliveredNotification], None]
ResponseHandler = Callable[[UserResponse], None]


def notification_identifier(task_id: str) -> str:
    """同一任务始终使用同一个通知标识"""
    return f"task_{task_id}"


def ordinal(num: int) -> str:
    """1st / 2nd / 3rd / 4th ... 11th / 12th / 13th / 21st"""
    j = num % 10
    k = num % 100
    if j == 1 and k != 11:
        return f"{num}st"
    if j == 2 and k != 12:
        return f"{num}nd"
    if j == 3 and k != 13:
        return f"{num}rd"
    return f"{num}th"


def build_reminder_payload(task: Task) -> NotificationPayload:
    """构建到期提醒的通知内容"""
    if task.reschedule_count > 0:
        title = "Task Rescheduled"
        body = f'This is the {ordinal(task.reschedule_count)} time for "{task.title}"'
    else:
        title = "Time's Up!"
        body = f'Have you completed "{task.title}"?'
    return NotificationPayload(
        title=title,
        body=body,
        task_id=task.task_id,
        priority=task.priority,
        interval=task.timer.duration_minutes,
        reschedule_count=task.reschedule_count,
    )


class Subscription:
    """可取消的订阅句柄，unsubscribe 幂等"""

    def __init__(self, on_unsubscribe: Callable[[], None]) -> None:
        self._on_unsubscribe = on_unsubscribe
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._on_unsubscribe()


class NotificationPort(Protocol):
    """设备通知能力接口"""

    async def schedule(
        self,
        task_id: str,
        payload: NotificationPayload,
        delay_minutes: int,
    ) -> str:
        """调度一条通知，返回 notification_id；失败时抛出异常"""
        ...

    async def cancel(self, task_id: str) -> None:
        """取消任务的通知（幂等）"""
        ...

    def subscribe_delivered(self, handler: DeliveredHandler) -> Subscription:
        ...

    def subscribe_user_response(self, handler: ResponseHandler) -> Subscription:
        ...


class ScheduledNotification(BaseModel):
    """LocalNotificationPort 中的一条待送达通知"""

    notification_id: str
    task_id: str
    payload: NotificationPayload
    delay_minutes: int
    fire_at: datetime


class LocalNotificationPort:
    """进程内 Notification Port 实现

    auto_deliver=True 时通过事件循环定时器在到期后送达，
    seconds_per_minute 可压缩时间用于演示。
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        auto_deliver: bool = False,
        seconds_per_minute: float = 60.0,
    ) -> None:
        self._clock = clock
        self._auto_deliver = auto_deliver
        self._seconds_per_minute = seconds_per_minute
        self._scheduled: dict[str, ScheduledNotification] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._delivered_handlers: list[DeliveredHandler] = []
        self._response_handlers: list[ResponseHandler] = []
        # 调用记录，便于观察去重效果
        self.schedule_calls: list[str] = []
        self.cancel_calls: list[str] = []

    async def schedule(
        self,
        task_id: str,
        payload: NotificationPayload,
        delay_minutes: int,
    ) -> str:
        if not task_id:
            raise ValueError("task_id 不能为空")

        self.schedule_calls.append(task_id)
        self._drop_timer(task_id)

        notification_id = notification_identifier(task_id)
        self._scheduled[task_id] = ScheduledNotification(
            notification_id=notification_id,
            task_id=task_id,
            payload=payload,
            delay_minutes=delay_minutes,
            fire_at=self._clock() + timedelta(minutes=delay_minutes),
        )

        if self._auto_deliver:
            loop = asyncio.get_running_loop()
            self._timers[task_id] = loop.call_later(
                delay_minutes * self._seconds_per_minute,
                self.deliver,
                task_id,
            )

        log.debug(
            "local_notification_scheduled",
            task_id=task_id,
            delay_minutes=delay_minutes,
        )
        return notification_id

    async def cancel(self, task_id: str) -> None:
        self.cancel_calls.append(task_id)
        self._drop_timer(task_id)
        self._scheduled.pop(task_id, None)

    def subscribe_delivered(self, handler: DeliveredHandler) -> Subscription:
        self._delivered_handlers.append(handler)
        return Subscription(lambda: self._remove(self._delivered_handlers, handler))

    def subscribe_user_response(self, handler: ResponseHandler) -> Subscription:
        self._response_handlers.append(handler)
        return Subscription(lambda: self._remove(self._response_handlers, handler))

    def pending(self) -> list[ScheduledNotification]:
        """尚未送达的通知"""
        return list(self._scheduled.values())

    def is_scheduled(self, task_id: str) -> bool:
        return task_id in self._scheduled

    def deliver(self, task_id: str) -> bool:
        """送达一条已调度的通知

        Returns:
            True 如果该任务确有待送达通知
        """
        self._timers.pop(task_id, None)
        scheduled = self._scheduled.pop(task_id, None)
        if scheduled is None:
            return False
        event = DeliveredNotification(
            task_id=task_id,
            notification_id=scheduled.notification_id,
            delivered_at=self._clock(),
        )
        self._dispatch(self._delivered_handlers, event)
        return True

    def respond(
        self,
        task_id: str,
        action: NotificationAction = NotificationAction.OPEN,
        interval_index: int = 0,
    ) -> None:
        """模拟用户在通知上的操作"""
        event = UserResponse(task_id=task_id, action=action, interval_index=interval_index)
        self._dispatch(self._response_handlers, event)

    def _drop_timer(self, task_id: str) -> None:
        handle = self._timers.pop(task_id, None)
        if handle is not None:
            handle.cancel()

    @staticmethod
    def _remove(handlers: list, handler) -> None:
        if handler in handlers:
            handlers.remove(handler)

    @staticmethod
    def _dispatch(handlers: list, event) -> None:
        for handler in list(handlers):
            try:
                handler(event)
            except Exception as e:
                log.error(
                    "notification_handler_failed",
                    event_type=type(event).__name__,
                    error_type=type(e).__name__,
                )
