"""Store Protocol 接口定义

定义 TaskStore、LevelStore、KeyValueStore 的抽象接口，
使用 Python Protocol 实现结构化子类型（duck typing）。
"""

from typing import Protocol

from ..models.level import LevelProfile
from ..models.task import Task


class TaskStore(Protocol):
    """Task 文档存储接口"""

    async def create_task(self, task: Task) -> None:
        """创建任务记录"""
        ...

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        ...

    async def list_tasks(self, owner_id: str, status: str | None = None) -> list[Task]:
        """查询用户的任务列表，支持按状态筛选"""
        ...

    async def save_task(self, task: Task) -> bool:
        """覆盖写入任务，返回是否命中已有记录"""
        ...


class LevelStore(Protocol):
    """等级档案存储接口"""

    async def get_profile(self, owner_id: str) -> LevelProfile | None:
        ...

    async def save_profile(self, profile: LevelProfile) -> None:
        ...


class KeyValueStore(Protocol):
    """本地持久化键值存储接口（无 TTL）"""

    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...
