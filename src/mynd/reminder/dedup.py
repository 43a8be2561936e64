"""DedupStore -- 短时去重标记

吸收重叠计时器、UI 重渲染、推送送达与本地到期检测同时发生时产生的重复调度。
只抑制重复的副作用，从不抑制状态变更。

标记存于显式注入的内存表（按 task_id 索引的时间戳），并同步写入本地持久化
键值存储，进程重启后仍在窗口内的标记依旧有效。存储本身不过期，读取时检查时效。
"""

import json
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from .config import DEDUP_WINDOW_MS
from .store.protocols import KeyValueStore

log = structlog.get_logger()

_KEY_PREFIX = "recent_notification_"


def _now_ms(clock: Callable[[], datetime]) -> int:
    return int(clock().timestamp() * 1000)


class DedupStore:
    """去重标记存储

    同一 task_id 的 mark_sent 在内存表中同步生效，
    因此随后的 was_recently_sent 一定能看到它。
    """

    def __init__(
        self,
        kv: KeyValueStore,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        window_ms: int = DEDUP_WINDOW_MS,
    ) -> None:
        self._kv = kv
        self._clock = clock
        self._window_ms = window_ms
        # task_id -> 标记时间戳（毫秒）
        self._markers: dict[str, int] = {}

    @property
    def window_ms(self) -> int:
        return self._window_ms

    async def was_recently_sent(self, task_id: str) -> bool:
        """标记存在且 now - 标记时间 < 窗口时返回 True"""
        if not task_id:
            return False

        now_ms = _now_ms(self._clock)
        marker = self._markers.get(task_id)
        if marker is None:
            marker = await self._load_marker(task_id)
            if marker is not None:
                self._markers[task_id] = marker
        if marker is None:
            return False

        age_ms = now_ms - marker
        recent = 0 <= age_ms < self._window_ms
        if recent:
            log.debug("dedup_marker_hit", task_id=task_id, age_ms=age_ms)
        return recent

    async def mark_sent(self, task_id: str) -> None:
        """记录 (task_id, 当前时间) 标记"""
        if not task_id:
            return
        now_ms = _now_ms(self._clock)
        self._markers[task_id] = now_ms
        try:
            await self._kv.set(_KEY_PREFIX + task_id, json.dumps({"timestamp": now_ms}))
        except Exception as e:
            # 内存标记已生效，持久化失败只影响跨进程去重
            log.warning(
                "dedup_marker_persist_failed",
                task_id=task_id,
                error_type=type(e).__name__,
            )

    async def forget(self, task_id: str) -> None:
        """删除任务时清理标记"""
        self._markers.pop(task_id, None)
        try:
            await self._kv.remove(_KEY_PREFIX + task_id)
        except Exception as e:
            log.warning(
                "dedup_marker_remove_failed",
                task_id=task_id,
                error_type=type(e).__name__,
            )

    def clear(self) -> None:
        """清空内存标记"""
        self._markers.clear()

    def marker_for(self, task_id: str) -> int | None:
        return self._markers.get(task_id)

    async def _load_marker(self, task_id: str) -> int | None:
        try:
            raw = await self._kv.get(_KEY_PREFIX + task_id)
        except Exception as e:
            log.warning(
                "dedup_marker_load_failed",
                task_id=task_id,
                error_type=type(e).__name__,
            )
            return None
        if not raw:
            return None
        try:
            return int(json.loads(raw)["timestamp"])
        except (ValueError, KeyError, TypeError):
            log.warning("dedup_marker_corrupt", task_id=task_id)
            return None
