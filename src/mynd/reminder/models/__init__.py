"""Mynd Reminder Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .enums import (
    ADMISSIBLE_PHASES,
    PRIORITY_RANK,
    VALID_TRANSITIONS,
    LatchState,
    NotificationAction,
    Priority,
    ScheduleOutcome,
    TaskStatus,
    TimerPhase,
    validate_transition,
)
from .level import LevelData, LevelProfile, XPAward
from .notification import DeliveredNotification, NotificationPayload, UserResponse
from .results import (
    AdmissionResult,
    CompletionResult,
    LevelUpdate,
    ReconcileResult,
    ReminderPrompt,
    RescheduleResult,
    ScheduleResult,
)
from .task import Task, TimerState

__all__ = [
    # 枚举
    "Priority",
    "TaskStatus",
    "TimerPhase",
    "LatchState",
    "ScheduleOutcome",
    "NotificationAction",
    # 状态机
    "PRIORITY_RANK",
    "VALID_TRANSITIONS",
    "ADMISSIBLE_PHASES",
    "validate_transition",
    # Task
    "Task",
    "TimerState",
    # Level
    "LevelData",
    "LevelProfile",
    "XPAward",
    # Notification
    "NotificationPayload",
    "DeliveredNotification",
    "UserResponse",
    # Results / UI 信号
    "ScheduleResult",
    "AdmissionResult",
    "CompletionResult",
    "RescheduleResult",
    "ReconcileResult",
    "ReminderPrompt",
    "LevelUpdate",
]
