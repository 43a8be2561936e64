"""Leveling Engine -- 由已完成任务历史计算 XP 与等级

xp_for / xp_required_for / level_from_total_xp / apply_xp 均为纯函数；
LevelingEngine 负责档案的读取、初始化、持久化与 LevelUpdate 推送。
与通知没有耦合，只由完成事件触发。
"""

import math
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from .models import (
    LevelData,
    LevelProfile,
    LevelUpdate,
    Priority,
    Task,
    TaskStatus,
    XPAward,
)
from .signals import SignalHub
from .store.protocols import LevelStore, TaskStore

log = structlog.get_logger()

# 单个任务的基础 XP
BASE_TASK_XP = 10

PRIORITY_MULTIPLIER: dict[Priority, float] = {
    Priority.LOWEST: 1.0,
    Priority.MEDIUM: 1.5,
    Priority.HIGH: 2.0,
    Priority.URGENT: 3.0,
}

# 间隔越短，专注强度越高；未列出的间隔倍率为 1
INTERVAL_MULTIPLIER: dict[int, float] = {
    5: 3.0,
    10: 2.0,
    15: 1.5,
    30: 1.0,
}

SUBTASK_XP = 5
MAX_SUBTASK_BONUS = 25

# 等级曲线
LEVEL_BASE_XP = 100
SCALING_FACTOR = 1.5
MAX_LEVEL = 100


def xp_for(task: Task) -> int:
    """单个已完成任务的 XP"""
    priority_multiplier = PRIORITY_MULTIPLIER.get(task.priority, 1.0)
    interval_multiplier = 1.0
    if task.allowed_intervals:
        interval_multiplier = INTERVAL_MULTIPLIER.get(min(task.allowed_intervals), 1.0)
    subtask_bonus = min(task.subtask_count * SUBTASK_XP, MAX_SUBTASK_BONUS)
    return math.floor(
        BASE_TASK_XP * priority_multiplier * interval_multiplier + subtask_bonus
    )


def xp_required_for(level: int) -> int:
    """从 level 升到 level+1 所需 XP"""
    return math.floor(LEVEL_BASE_XP * SCALING_FACTOR ** (level - 1))


def level_from_total_xp(total_xp: int) -> LevelData:
    """由累计 XP 推导等级

    从 1 级开始逐级扣除升级所需 XP，直到余量不足或达到最高等级。
    """
    level = 1
    remainder = max(0, total_xp)
    while level < MAX_LEVEL and remainder >= xp_required_for(level):
        remainder -= xp_required_for(level)
        level += 1
    return LevelData(
        level=level,
        current_xp=remainder,
        next_level_xp=xp_required_for(level),
    )


def apply_xp(profile: LevelProfile, task: Task, now: datetime) -> XPAward:
    """将一个已完成任务计入档案，返回新档案（不修改入参）"""
    earned = xp_for(task)
    new_total = profile.total_xp + earned
    data = level_from_total_xp(new_total)
    updated = profile.model_copy(
        update={
            "level": data.level,
            "current_xp": data.current_xp,
            "next_level_xp": data.next_level_xp,
            "total_xp": new_total,
            "total_tasks_completed": profile.total_tasks_completed + 1,
            "last_updated": now,
        }
    )
    return XPAward(
        earned_xp=earned,
        leveled_up=data.level > profile.level,
        profile=updated,
    )


def profile_from_history(owner_id: str, completed: list[Task], now: datetime) -> LevelProfile:
    """由已完成任务历史重新计算档案"""
    total = sum(xp_for(task) for task in completed)
    data = level_from_total_xp(total)
    return LevelProfile(
        owner_id=owner_id,
        level=data.level,
        current_xp=data.current_xp,
        next_level_xp=data.next_level_xp,
        total_xp=total,
        total_tasks_completed=len(completed),
        last_updated=now,
    )


class LevelingEngine:
    """等级档案服务"""

    def __init__(
        self,
        level_store: LevelStore,
        task_store: TaskStore,
        signals: SignalHub | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._level_store = level_store
        self._task_store = task_store
        self._signals = signals
        self._clock = clock

    async def get_profile(self, owner_id: str) -> LevelProfile:
        """读取档案；不存在时由历史初始化并保存"""
        profile = await self._level_store.get_profile(owner_id)
        if profile is not None:
            return profile
        return await self._initialize(owner_id)

    async def add_xp(self, owner_id: str, task: Task) -> XPAward:
        """计入一个已完成任务，持久化并推送 LevelUpdate"""
        profile = await self._level_store.get_profile(owner_id)
        if profile is None:
            # 被计入的任务可能已以 COMPLETED 落盘，初始化时排除以免重复计算
            profile = await self._initialize(owner_id, exclude_task_id=task.task_id)

        award = apply_xp(profile, task, self._clock())
        await self._level_store.save_profile(award.profile)

        log.info(
            "xp_awarded",
            owner_id=owner_id,
            task_id=task.task_id,
            earned_xp=award.earned_xp,
            level=award.profile.level,
            leveled_up=award.leveled_up,
        )

        if self._signals is not None:
            await self._signals.publish(
                owner_id,
                LevelUpdate(
                    owner_id=owner_id,
                    level_data=award.profile,
                    earned_xp=award.earned_xp,
                    leveled_up=award.leveled_up,
                ),
            )
        return award

    async def rebuild(self, owner_id: str) -> LevelProfile:
        """丢弃现有档案，按已完成任务历史重新计算"""
        completed = await self._task_store.list_tasks(owner_id, status=TaskStatus.COMPLETED)
        profile = profile_from_history(owner_id, completed, self._clock())
        await self._level_store.save_profile(profile)
        log.info(
            "level_profile_rebuilt",
            owner_id=owner_id,
            total_xp=profile.total_xp,
            level=profile.level,
        )
        return profile

    async def _initialize(
        self, owner_id: str, exclude_task_id: str | None = None
    ) -> LevelProfile:
        completed = await self._task_store.list_tasks(owner_id, status=TaskStatus.COMPLETED)
        if exclude_task_id is not None:
            completed = [t for t in completed if t.task_id != exclude_task_id]
        profile = profile_from_history(owner_id, completed, self._clock())
        await self._level_store.save_profile(profile)
        log.info(
            "level_profile_initialized",
            owner_id=owner_id,
            total_xp=profile.total_xp,
            tasks_completed=profile.total_tasks_completed,
        )
        return profile
