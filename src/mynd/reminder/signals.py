"""SignalHub -- 面向 UI 层的内存广播器

每个订阅者持有一个 asyncio.Queue，支持 subscribe/unsubscribe/publish。
承载 ReminderPrompt（提醒弹窗）与 LevelUpdate（等级数据）。
"""

import asyncio
from collections import defaultdict

from .models import LevelUpdate, ReminderPrompt

UiSignal = ReminderPrompt | LevelUpdate


class SignalHub:
    """UI 信号广播器 -- 基于 asyncio.Queue 的发布/订阅模式"""

    def __init__(self, queue_maxsize: int = 100) -> None:
        # owner_id -> set of asyncio.Queue
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._queue_maxsize = queue_maxsize

    async def subscribe(self, owner_id: str) -> asyncio.Queue:
        """订阅指定用户的 UI 信号

        Args:
            owner_id: 用户 ID

        Returns:
            asyncio.Queue 实例，新信号会被推送到此队列
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_maxsize)
        self._subscribers[owner_id].add(queue)
        return queue

    async def unsubscribe(self, owner_id: str, queue: asyncio.Queue) -> None:
        self._subscribers[owner_id].discard(queue)
        if not self._subscribers[owner_id]:
            del self._subscribers[owner_id]

    async def publish(self, owner_id: str, signal: UiSignal) -> None:
        """向指定用户的所有订阅者广播信号"""
        dead_queues = []
        for queue in self._subscribers.get(owner_id, set()):
            try:
                queue.put_nowait(signal)
            except asyncio.QueueFull:
                dead_queues.append(queue)

        # 清理已满的队列
        for q in dead_queues:
            self._subscribers[owner_id].discard(q)
        if owner_id in self._subscribers and not self._subscribers[owner_id]:
            del self._subscribers[owner_id]
