"""Task Domain Model

Task 由 UI 层创建（PENDING/IDLE），之后只由准入控制器、计时状态机和恢复器修改。
删除为软删除（status=DELETED），保证通知取消可以干净完成。
"""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from ..config import DEFAULT_INTERVAL, NOTIFICATION_INTERVALS
from .enums import PRIORITY_RANK, LatchState, Priority, TaskStatus, TimerPhase


class TimerState(BaseModel):
    """内嵌计时状态"""

    phase: TimerPhase = Field(default=TimerPhase.IDLE, description="计时阶段")
    start_time: datetime | None = Field(default=None, description="进入 ACTIVE 的时间")
    duration_minutes: int = Field(default=DEFAULT_INTERVAL, description="倒计时时长（分钟）")
    notification_id: str | None = Field(default=None, description="Notification Port 返回的句柄")
    completed_at: datetime | None = Field(default=None, description="完成/到期时间")
    latch: LatchState = Field(default=LatchState.PENDING, description="一次性完成闩锁")
    prompt_displayed: bool = Field(
        default=False, description="到期提醒弹窗是否已被 UI 展示"
    )


class Task(BaseModel):
    """Task 数据模型

    同一 owner 的 PENDING 任务中，至多一个处于 ACTIVE 且持有 notification_id。
    reschedule_count 只增不减。
    """

    task_id: str = Field(description="唯一标识，ULID 格式")
    owner_id: str = Field(description="所属用户")
    title: str = Field(default="", description="任务标题")
    priority: Priority = Field(default=Priority.MEDIUM, description="优先级")
    allowed_intervals: list[int] = Field(
        default_factory=lambda: [DEFAULT_INTERVAL],
        description="允许的提醒间隔（分钟），取自全局集合",
    )
    status: TaskStatus = Field(default=TaskStatus.PENDING, description="任务状态")
    timer: TimerState = Field(default_factory=TimerState, description="计时状态")
    reschedule_count: int = Field(default=0, ge=0, description="重新调度次数")
    subtask_count: int = Field(default=0, ge=0, description="子任务数量（仅用于 XP）")
    created_at: datetime = Field(description="创建时间")
    updated_at: datetime = Field(description="更新时间")

    @field_validator("allowed_intervals")
    @classmethod
    def _intervals_from_global_set(cls, value: list[int]) -> list[int]:
        for minutes in value:
            if minutes not in NOTIFICATION_INTERVALS:
                raise ValueError(
                    f"间隔 {minutes} 不在全局集合 {NOTIFICATION_INTERVALS} 中"
                )
        return value

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self.priority]

    @property
    def is_admitted(self) -> bool:
        """是否持有唯一的活跃提醒槽"""
        return (
            self.status == TaskStatus.PENDING
            and self.timer.phase == TimerPhase.ACTIVE
            and self.timer.notification_id is not None
        )
