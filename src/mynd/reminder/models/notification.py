"""通知相关模型 -- Notification Port 的入参与回调事件"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import NotificationAction, Priority


class NotificationPayload(BaseModel):
    """本地通知内容"""

    title: str
    body: str
    task_id: str
    priority: Priority
    interval: int = Field(description="本次倒计时时长（分钟）")
    reschedule_count: int = Field(default=0)
    kind: str = Field(default="timer-completion")
    category: str = Field(default="task-reminder")


class DeliveredNotification(BaseModel):
    """通知已送达设备"""

    task_id: str
    notification_id: str
    delivered_at: datetime


class UserResponse(BaseModel):
    """用户在通知上做出的动作"""

    task_id: str
    action: NotificationAction = Field(default=NotificationAction.OPEN)
    interval_index: int = Field(default=0, description="reschedule 时选择的间隔下标")
