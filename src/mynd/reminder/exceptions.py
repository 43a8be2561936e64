"""提醒引擎异常体系

所有异常在公共操作边界被捕获并记录日志，不向宿主进程抛出。
"""


class ReminderError(Exception):
    """提醒引擎基础异常"""

    def __init__(self, message: str, recoverable: bool = True) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 是否可在下一次准入/恢复轮次中自愈
        """
        super().__init__(message)
        self.recoverable = recoverable


class InvalidIntervalError(ReminderError):
    """时长不在任务允许的间隔列表中"""

    def __init__(self, task_id: str, duration_minutes: int, allowed: list[int]) -> None:
        super().__init__(
            f"任务 {task_id} 的时长 {duration_minutes} 不在允许间隔 {allowed} 中",
            recoverable=False,
        )
        self.task_id = task_id
        self.duration_minutes = duration_minutes
        self.allowed = allowed


class InvalidTransitionError(ReminderError):
    """计时阶段流转不在状态机内"""

    def __init__(self, task_id: str, from_phase: str, to_phase: str) -> None:
        super().__init__(
            f"任务 {task_id} 不能从 {from_phase} 流转到 {to_phase}",
            recoverable=False,
        )
        self.task_id = task_id
        self.from_phase = from_phase
        self.to_phase = to_phase


class NotificationSchedulingFailure(ReminderError):
    """Notification Port 调度失败

    任务保持 SCHEDULED，等待下一次准入轮次。
    """

    def __init__(self, task_id: str, original_error: Exception | None = None) -> None:
        super().__init__(
            f"任务 {task_id} 通知调度失败: {original_error}",
            recoverable=True,
        )
        self.task_id = task_id
        self.original_error = original_error


class PersistenceFailure(ReminderError):
    """文档存储写入失败

    本地预测视图与存储可能暂时不一致，直到下一次成功写入。
    """

    def __init__(self, task_id: str, original_error: Exception | None = None) -> None:
        super().__init__(
            f"任务 {task_id} 持久化失败: {original_error}",
            recoverable=True,
        )
        self.task_id = task_id
        self.original_error = original_error


class TaskNotFoundError(ReminderError):
    """任务已不存在，按 no-op 处理"""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"任务不存在: {task_id}", recoverable=True)
        self.task_id = task_id
