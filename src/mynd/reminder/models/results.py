"""公共操作的返回值

所有公共操作在边界捕获异常，以结果对象而不是异常的形式告知调用方。
"""

from pydantic import BaseModel, Field

from .enums import ScheduleOutcome
from .level import LevelProfile, XPAward
from .task import Task


class ScheduleResult(BaseModel):
    """scheduleTaskNotification 结果"""

    task_id: str
    outcome: ScheduleOutcome
    notification_id: str | None = None
    reason: str = ""


class AdmissionResult(BaseModel):
    """admitNext 结果"""

    admitted_task_id: str | None = None
    preempted_task_ids: list[str] = Field(default_factory=list)
    schedule: ScheduleResult | None = None


class CompletionResult(BaseModel):
    """completeTask 级联结果"""

    task_id: str
    found: bool = True
    task: Task | None = None
    award: XPAward | None = None
    admission: AdmissionResult | None = None


class RescheduleResult(BaseModel):
    """rescheduleTaskNotification 结果"""

    task_id: str
    found: bool = True
    task: Task | None = None
    was_admitted: bool = False
    schedule: ScheduleResult | None = None


class ReconcileResult(BaseModel):
    """一次恢复轮次的结果"""

    reconciled_task_id: str | None = None
    prompted_task_id: str | None = None
    prompt_shown: bool = False
    admission: AdmissionResult | None = None


class LevelUpdate(BaseModel):
    """推送给 UI 的等级数据"""

    owner_id: str
    level_data: LevelProfile
    earned_xp: int = 0
    leveled_up: bool = False


class ReminderPrompt(BaseModel):
    """推送给 UI 的提醒弹窗"""

    owner_id: str
    current_reminder_task: Task
    show_reminder_modal: bool = True
    reason: str = Field(default="", description="expired / delivered")
