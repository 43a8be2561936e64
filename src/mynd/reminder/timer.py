"""计时状态机 -- 单个任务的倒计时生命周期

IDLE -> SCHEDULED -> ACTIVE -> {COMPLETED | EXPIRED}，
显式 reschedule 可从任意阶段回到 SCHEDULED。

所有流转函数都是纯函数：返回新的 Task，不修改入参，也不做 I/O。
持久化和通知副作用由准入控制器负责。
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel

from .exceptions import InvalidIntervalError, InvalidTransitionError
from .models import LatchState, Task, TimerPhase, TimerState, validate_transition


class CountdownSample(BaseModel):
    """倒计时采样（只读模型）"""

    minutes_left: int
    seconds_left: int

    @property
    def finished(self) -> bool:
        return self.minutes_left == 0 and self.seconds_left == 0


def _transition(task: Task, to_phase: TimerPhase, now: datetime, **updates: Any) -> Task:
    """校验并执行一次阶段流转"""
    from_phase = task.timer.phase
    if not validate_transition(from_phase, to_phase):
        raise InvalidTransitionError(task.task_id, from_phase.value, to_phase.value)
    timer = task.timer.model_copy(update={"phase": to_phase, **updates})
    return task.model_copy(update={"timer": timer, "updated_at": now})


def validate_duration(task: Task, duration_minutes: int) -> None:
    """时长必须取自任务的 allowed_intervals"""
    if duration_minutes not in task.allowed_intervals:
        raise InvalidIntervalError(
            task.task_id, duration_minutes, list(task.allowed_intervals)
        )


def schedule(task: Task, duration_minutes: int, now: datetime) -> Task:
    """IDLE/SCHEDULED/ACTIVE -> SCHEDULED

    终态（COMPLETED/EXPIRED）只能通过 reschedule 重新进入 SCHEDULED。
    """
    if task.timer.phase in (TimerPhase.COMPLETED, TimerPhase.EXPIRED):
        raise InvalidTransitionError(
            task.task_id, task.timer.phase.value, TimerPhase.SCHEDULED.value
        )
    validate_duration(task, duration_minutes)
    return _transition(
        task,
        TimerPhase.SCHEDULED,
        now,
        start_time=None,
        duration_minutes=duration_minutes,
        notification_id=None,
        completed_at=None,
        latch=LatchState.PENDING,
    )


def activate(task: Task, notification_id: str, now: datetime) -> Task:
    """SCHEDULED -> ACTIVE，在 Notification Port 确认调度之后调用"""
    return _transition(
        task,
        TimerPhase.ACTIVE,
        now,
        start_time=now,
        notification_id=notification_id,
        latch=LatchState.PENDING,
        prompt_displayed=False,
    )


def complete(task: Task, now: datetime) -> Task:
    """-> COMPLETED，用户标记完成"""
    return _transition(
        task,
        TimerPhase.COMPLETED,
        now,
        completed_at=now,
        notification_id=None,
        latch=LatchState.CONSUMED,
    )


def expire(task: Task, now: datetime) -> Task:
    """ACTIVE -> EXPIRED，时长已过且用户未操作；闩锁随之消耗"""
    return _transition(
        consume_latch(task),
        TimerPhase.EXPIRED,
        now,
        completed_at=now,
        notification_id=None,
    )


def reschedule(task: Task, duration_minutes: int, now: datetime) -> Task:
    """任意阶段 -> SCHEDULED，reschedule_count 加一，计时簿记全部重置"""
    rescheduled = _transition(
        task,
        TimerPhase.SCHEDULED,
        now,
        start_time=None,
        duration_minutes=duration_minutes,
        notification_id=None,
        completed_at=None,
        latch=LatchState.PENDING,
    )
    return rescheduled.model_copy(
        update={"reschedule_count": task.reschedule_count + 1}
    )


def preempt(task: Task, now: datetime) -> Task:
    """ACTIVE -> SCHEDULED，任务失去准入资格，保留时长等待再次准入"""
    return _transition(
        task,
        TimerPhase.SCHEDULED,
        now,
        start_time=None,
        notification_id=None,
        latch=LatchState.PENDING,
    )


def strip_notification(task: Task, now: datetime) -> Task:
    """仅清除 notification_id，阶段不变（过期任务留给恢复器处理）"""
    timer = task.timer.model_copy(update={"notification_id": None})
    return task.model_copy(update={"timer": timer, "updated_at": now})


def try_fire_latch(task: Task) -> tuple[Task, bool]:
    """尝试触发一次性闩锁

    Returns:
        (新的 Task, 是否由本次调用触发)；非 ACTIVE 或已触发时返回 False
    """
    if task.timer.phase != TimerPhase.ACTIVE or task.timer.latch != LatchState.PENDING:
        return task, False
    timer = task.timer.model_copy(update={"latch": LatchState.FIRED})
    return task.model_copy(update={"timer": timer}), True


def consume_latch(task: Task) -> Task:
    timer = task.timer.model_copy(update={"latch": LatchState.CONSUMED})
    return task.model_copy(update={"timer": timer})


def ends_at(timer: TimerState) -> datetime | None:
    if timer.start_time is None:
        return None
    return timer.start_time + timedelta(minutes=timer.duration_minutes)


def remaining_ms(timer: TimerState, now: datetime) -> int:
    """startTime + durationMinutes*60000 - now，下限为 0"""
    end = ends_at(timer)
    if end is None:
        return timer.duration_minutes * 60_000
    return max(0, int((end - now) / timedelta(milliseconds=1)))


def is_stale(task: Task, now: datetime) -> bool:
    """ACTIVE 且结束时间已早于 now"""
    if task.timer.phase != TimerPhase.ACTIVE:
        return False
    end = ends_at(task.timer)
    return end is not None and end < now


def sample(timer: TimerState, now: datetime) -> CountdownSample:
    total_seconds = remaining_ms(timer, now) // 1000
    return CountdownSample(
        minutes_left=total_seconds // 60,
        seconds_left=total_seconds % 60,
    )


async def countdown(
    timer: TimerState,
    clock: Callable[[], datetime],
    tick_s: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncIterator[CountdownSample]:
    """倒计时采样序列

    仅在 ACTIVE 阶段产出；每次从 start_time 重新计算，可随时重新开始。
    最后一个采样为 (0, 0)，之后序列结束。
    """
    if timer.phase != TimerPhase.ACTIVE:
        return
    while True:
        current = sample(timer, clock())
        yield current
        if current.finished:
            return
        await sleep(tick_s)
