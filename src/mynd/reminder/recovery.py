"""Recovery Reconciler -- 修复进程挂起/被杀期间已过期的计时

每次前台切换（或周期性节拍）执行一轮：按结束时间从早到晚，
只处理第一个过期的 ACTIVE 任务（ACTIVE -> EXPIRED），推送一次提醒弹窗，
然后重新准入。其余过期任务留到下一轮，避免提示堆叠。
没有新的过期任务时，补发一个 UI 尚未确认展示的到期提示。
"""

from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from . import timer
from .admission import AdmissionController
from .models import ReconcileResult, ReminderPrompt, Task, TaskStatus, TimerPhase
from .signals import SignalHub
from .store.protocols import TaskStore

log = structlog.get_logger()


def _stale_order(task: Task) -> tuple:
    return (timer.ends_at(task.timer), task.created_at, task.task_id)


def _awaits_prompt(task: Task) -> bool:
    return task.timer.phase == TimerPhase.EXPIRED and not task.timer.prompt_displayed


def _expired_order(task: Task) -> tuple:
    return (task.timer.completed_at or task.created_at, task.created_at, task.task_id)


class RecoveryReconciler:
    """过期计时恢复器"""

    def __init__(
        self,
        task_store: TaskStore,
        controller: AdmissionController,
        signals: SignalHub | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._task_store = task_store
        self._controller = controller
        self._signals = signals
        self._clock = clock

    async def reconcile(self, owner_id: str) -> ReconcileResult:
        """执行一轮恢复"""
        if self._controller.closed:
            return ReconcileResult()

        try:
            tasks = await self._task_store.list_tasks(owner_id, status=TaskStatus.PENDING)
        except Exception as e:
            log.error(
                "reconcile_load_failed",
                owner_id=owner_id,
                error_type=type(e).__name__,
            )
            return ReconcileResult()

        now = self._clock()
        stale = sorted((t for t in tasks if timer.is_stale(t, now)), key=_stale_order)

        result = ReconcileResult()
        if stale:
            target = stale[0]
            expired = await self._controller.expire_task(target.task_id)
            result.reconciled_task_id = target.task_id
            if expired is not None:
                await self._prompt(expired, reason="expired")
                result.prompted_task_id = target.task_id
                result.prompt_shown = True
            log.info(
                "stale_timer_reconciled",
                owner_id=owner_id,
                task_id=target.task_id,
                remaining_stale=len(stale) - 1,
            )
        else:
            # 提示未被 UI 确认（无订阅者或进程被杀）时，每轮补发一个
            unprompted = sorted(filter(_awaits_prompt, tasks), key=_expired_order)
            if unprompted:
                target = unprompted[0]
                await self._prompt(target, reason="expired")
                result.prompted_task_id = target.task_id
                result.prompt_shown = True
                log.info(
                    "expired_prompt_repeated",
                    owner_id=owner_id,
                    task_id=target.task_id,
                )

        result.admission = await self._controller.admit_next(owner_id)
        return result

    async def handle_expiry(self, task_id: str, reason: str = "delivered") -> bool:
        """计时结束信号（倒计时归零或通知送达）

        同一 ACTIVE 周期只有第一个信号生效，其余为 no-op。

        Returns:
            True 如果本次信号使任务到期并推送了提醒
        """
        expired = await self._controller.expire_task(task_id)
        if expired is None:
            return False
        await self._prompt(expired, reason=reason)
        await self._controller.admit_next(expired.owner_id)
        return True

    async def _prompt(self, task: Task, reason: str) -> None:
        if self._signals is None:
            return
        await self._signals.publish(
            task.owner_id,
            ReminderPrompt(
                owner_id=task.owner_id,
                current_reminder_task=task,
                reason=reason,
            ),
        )
