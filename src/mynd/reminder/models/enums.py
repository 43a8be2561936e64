"""枚举定义

包含 Priority 排序、TaskStatus、TimerPhase 计时状态机、LatchState 一次性闩锁，
以及 VALID_TRANSITIONS 合法流转映射和 ADMISSIBLE_PHASES 可准入阶段集合。
"""

from enum import StrEnum


class Priority(StrEnum):
    """任务优先级 -- 严格全序，URGENT 最高"""

    URGENT = "Urgent"
    HIGH = "High"
    MEDIUM = "Medium"
    LOWEST = "Lowest"


# 唯一的优先级比较依据：rank 越小优先级越高
PRIORITY_RANK: dict[Priority, int] = {
    Priority.URGENT: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOWEST: 3,
}


class TaskStatus(StrEnum):
    """任务状态"""

    PENDING = "Pending"
    COMPLETED = "Completed"
    DELETED = "Deleted"


class TimerPhase(StrEnum):
    """单个任务的计时阶段"""

    IDLE = "Idle"
    SCHEDULED = "Scheduled"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    EXPIRED = "Expired"


class LatchState(StrEnum):
    """一次性完成闩锁：每个 ACTIVE 周期只允许触发一次到期副作用"""

    PENDING = "Pending"
    FIRED = "Fired"
    CONSUMED = "Consumed"


# 合法阶段流转
VALID_TRANSITIONS: dict[TimerPhase, set[TimerPhase]] = {
    TimerPhase.IDLE: {TimerPhase.SCHEDULED, TimerPhase.COMPLETED},
    TimerPhase.SCHEDULED: {
        TimerPhase.SCHEDULED,
        TimerPhase.ACTIVE,
        TimerPhase.COMPLETED,
    },
    TimerPhase.ACTIVE: {
        TimerPhase.COMPLETED,
        TimerPhase.EXPIRED,
        TimerPhase.SCHEDULED,
    },
    # 终态只能通过显式 reschedule 回到 SCHEDULED
    TimerPhase.COMPLETED: {TimerPhase.SCHEDULED},
    TimerPhase.EXPIRED: {TimerPhase.SCHEDULED, TimerPhase.COMPLETED},
}

# 可被准入控制器选中的阶段（EXPIRED/COMPLETED 等待用户响应提醒）
ADMISSIBLE_PHASES: set[TimerPhase] = {
    TimerPhase.IDLE,
    TimerPhase.SCHEDULED,
    TimerPhase.ACTIVE,
}


class ScheduleOutcome(StrEnum):
    """调度算法结果"""

    SCHEDULED = "scheduled"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    FAILED = "failed"
    NOT_FOUND = "not_found"


class NotificationAction(StrEnum):
    """通知上的用户动作"""

    OPEN = "open"
    COMPLETE = "complete"
    RESCHEDULE = "reschedule"
    DELETE = "delete"


def validate_transition(from_phase: TimerPhase, to_phase: TimerPhase) -> bool:
    """验证阶段流转是否合法

    Args:
        from_phase: 当前阶段
        to_phase: 目标阶段

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_phase, set())
    return to_phase in allowed
