"""等级数据模型"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field


class LevelData(BaseModel):
    """由累计 XP 推导出的等级数据"""

    level: int = Field(ge=1, le=100)
    current_xp: int = Field(ge=0, description="当前等级内已积累的 XP")
    next_level_xp: int = Field(ge=0, description="升到下一级所需 XP")


class LevelProfile(BaseModel):
    """用户等级档案"""

    owner_id: str
    level: int = Field(default=1, ge=1, le=100)
    current_xp: int = Field(default=0, ge=0)
    next_level_xp: int = Field(default=100, ge=0)
    total_xp: int = Field(default=0, ge=0)
    total_tasks_completed: int = Field(default=0, ge=0)
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))


class XPAward(BaseModel):
    """一次任务完成带来的 XP 结果"""

    earned_xp: int
    leveled_up: bool
    profile: LevelProfile
