"""TaskView -- 单一的任务调和视图

存储快照是唯一事实来源；本地修改只作为待确认、可被覆盖的预测。
读取时预测覆盖在快照之上，新的快照到达时该 owner 的预测全部丢弃。
"""

import structlog

from .models.task import Task

log = structlog.get_logger()


class TaskView:
    """快照 + 预测两层的任务视图"""

    def __init__(self) -> None:
        # task_id -> 存储确认过的 Task
        self._snapshot: dict[str, Task] = {}
        # task_id -> 尚未被存储确认的本地预测
        self._predictions: dict[str, Task] = {}

    def apply_snapshot(self, owner_id: str, tasks: list[Task]) -> None:
        """用存储快照整体替换 owner 的任务，丢弃其全部预测"""
        for task_id in [tid for tid, t in self._snapshot.items() if t.owner_id == owner_id]:
            del self._snapshot[task_id]
        dropped = [tid for tid, t in self._predictions.items() if t.owner_id == owner_id]
        for task_id in dropped:
            del self._predictions[task_id]
        for task in tasks:
            self._snapshot[task.task_id] = task
        if dropped:
            log.info(
                "task_view_predictions_dropped",
                owner_id=owner_id,
                dropped_count=len(dropped),
            )

    def apply_document(self, task: Task) -> None:
        """单个任务写入成功：确认为快照，丢弃其预测"""
        self._snapshot[task.task_id] = task
        self._predictions.pop(task.task_id, None)

    def predict(self, task: Task) -> None:
        """记录一次本地预测（写入尚未确认）"""
        self._predictions[task.task_id] = task

    def get(self, task_id: str) -> Task | None:
        return self._predictions.get(task_id) or self._snapshot.get(task_id)

    def list_tasks(self, owner_id: str) -> list[Task]:
        """owner 的全部任务（预测优先），按 created_at, task_id 排序"""
        merged = {
            tid: t for tid, t in self._snapshot.items() if t.owner_id == owner_id
        }
        for tid, t in self._predictions.items():
            if t.owner_id == owner_id:
                merged[tid] = t
        return sorted(merged.values(), key=lambda t: (t.created_at, t.task_id))

    def pending_predictions(self) -> list[str]:
        """与存储存在分歧的 task_id"""
        return list(self._predictions)
