"""Priority Admission Controller -- 单一活跃提醒槽的准入控制

保证同一 owner 的 PENDING 任务中至多一个处于 ACTIVE 且持有 notification_id。
所有公共操作在边界捕获失败并记录日志，以结果对象告知调用方，不向宿主进程抛出。

锁顺序：owner 锁 -> task 锁。持有 task 锁时不获取 owner 锁。
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from pydantic import ValidationError
from ulid import ULID

from . import timer
from .config import DEFAULT_INTERVAL
from .dedup import DedupStore
from .exceptions import (
    InvalidIntervalError,
    InvalidTransitionError,
    NotificationSchedulingFailure,
    PersistenceFailure,
    TaskNotFoundError,
)
from .leveling import LevelingEngine
from .models import (
    ADMISSIBLE_PHASES,
    AdmissionResult,
    CompletionResult,
    Priority,
    RescheduleResult,
    ScheduleOutcome,
    ScheduleResult,
    Task,
    TaskStatus,
    TimerPhase,
    TimerState,
)
from .notification_port import NotificationPort, build_reminder_payload
from .projection import TaskView
from .store import StoreGroup
from .store.transaction import create_task_atomically, save_task_atomically

log = structlog.get_logger()


def admission_order(task: Task) -> tuple:
    """准入排序键：rank 越小越优先，同 rank 按创建时间、task_id"""
    return (task.rank, task.created_at, task.task_id)


def resolve_interval(
    task: Task, interval_index: int, fallback: int = DEFAULT_INTERVAL
) -> int:
    """allowed_intervals[interval_index]，越界取第一个，列表为空取兜底值"""
    intervals = task.allowed_intervals
    if 0 <= interval_index < len(intervals):
        return intervals[interval_index]
    if intervals:
        return intervals[0]
    return fallback


def _holds_active_timer(task: Task | None) -> bool:
    return (
        task is not None
        and task.status == TaskStatus.PENDING
        and task.timer.phase == TimerPhase.ACTIVE
    )


class AdmissionController:
    """准入控制器"""

    def __init__(
        self,
        stores: StoreGroup,
        dedup: DedupStore,
        port: NotificationPort,
        view: TaskView | None = None,
        leveling: LevelingEngine | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        default_interval: int = DEFAULT_INTERVAL,
    ) -> None:
        self._stores = stores
        self._dedup = dedup
        self._port = port
        self._view = view or TaskView()
        self._leveling = leveling
        self._clock = clock
        self._default_interval = default_interval
        self._locks: dict[str, asyncio.Lock] = {}
        self._closed = False

    @property
    def view(self) -> TaskView:
        return self._view

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """标记控制器已销毁，此后的状态写入全部丢弃"""
        self._closed = True
        log.info("admission_controller_closed")

    # ============================================================
    # 查询
    # ============================================================

    async def get_task(self, task_id: str) -> Task | None:
        return await self._load(task_id)

    async def refresh(self, owner_id: str) -> list[Task]:
        """从存储加载 owner 的任务快照到 TaskView"""
        try:
            tasks = await self._stores.task_store.list_tasks(owner_id)
        except Exception as e:
            log.error(
                "task_snapshot_load_failed",
                owner_id=owner_id,
                error_type=type(e).__name__,
            )
            return self._view.list_tasks(owner_id)
        self._view.apply_snapshot(owner_id, tasks)
        return self._view.list_tasks(owner_id)

    async def admitted_task(self, owner_id: str) -> Task | None:
        """当前持有活跃提醒槽的任务"""
        for task in await self._list_pending(owner_id):
            if task.is_admitted:
                return task
        return None

    # ============================================================
    # 准入
    # ============================================================

    async def admit_next(self, owner_id: str) -> AdmissionResult:
        """选出 rank 最小的可准入任务并保证它持有唯一的活跃通知

        过期（stale）的 ACTIVE 任务留给恢复器：准入从不选中它们，
        只剥离其仍然存活的通知，阶段保持不变。
        """
        async with self._lock_for(f"owner:{owner_id}"):
            if self._closed:
                return AdmissionResult()

            tasks = await self._list_pending(owner_id)
            now = self._clock()

            candidates: list[Task] = []
            for task in tasks:
                if timer.is_stale(task, now):
                    if task.timer.notification_id is not None:
                        await self._strip_stale(task)
                elif task.timer.phase in ADMISSIBLE_PHASES:
                    candidates.append(task)

            selected = min(candidates, key=admission_order) if candidates else None
            result = AdmissionResult(
                admitted_task_id=selected.task_id if selected else None
            )

            for task in candidates:
                if task is selected or task.timer.phase != TimerPhase.ACTIVE:
                    continue
                if await self._preempt(task):
                    result.preempted_task_ids.append(task.task_id)

            if selected is not None and not selected.is_admitted:
                async with self._lock_for(selected.task_id):
                    result.schedule = await self._schedule(selected.task_id)

            log.info(
                "admission_completed",
                owner_id=owner_id,
                admitted_task_id=result.admitted_task_id,
                preempted=len(result.preempted_task_ids),
                outcome=result.schedule.outcome if result.schedule else None,
            )
            return result

    async def schedule_task_notification(self, task_id: str) -> ScheduleResult:
        """调度算法的公共入口"""
        if not task_id:
            return ScheduleResult(
                task_id="", outcome=ScheduleOutcome.REJECTED, reason="missing_task_id"
            )
        async with self._lock_for(task_id):
            return await self._schedule(task_id)

    async def _schedule(self, task_id: str, task: Task | None = None) -> ScheduleResult:
        """调度算法，调用方持有 task 锁

        1. 缺少 task_id 拒绝  2. 去重窗口内跳过  3. 取消旧通知
        4. 校验时长  5. 调度成功后 SCHEDULED -> ACTIVE 并标记去重
        6. 调度失败记录日志，任务停留在 SCHEDULED
        """
        if not task_id:
            return ScheduleResult(
                task_id="", outcome=ScheduleOutcome.REJECTED, reason="missing_task_id"
            )

        if await self._dedup.was_recently_sent(task_id):
            log.info("schedule_skipped_recently_sent", task_id=task_id)
            return ScheduleResult(
                task_id=task_id, outcome=ScheduleOutcome.SKIPPED, reason="recently_sent"
            )

        if self._closed:
            return ScheduleResult(
                task_id=task_id, outcome=ScheduleOutcome.REJECTED, reason="closed"
            )

        if task is None:
            task = await self._load(task_id)
        if task is None:
            return ScheduleResult(task_id=task_id, outcome=ScheduleOutcome.NOT_FOUND)
        if task.status != TaskStatus.PENDING:
            return ScheduleResult(
                task_id=task_id, outcome=ScheduleOutcome.REJECTED, reason="not_pending"
            )

        await self._cancel(task_id)

        now = self._clock()
        try:
            scheduled = timer.schedule(task, task.timer.duration_minutes, now)
        except (InvalidIntervalError, InvalidTransitionError) as e:
            log.warning("schedule_rejected", task_id=task_id, error=str(e))
            return ScheduleResult(
                task_id=task_id, outcome=ScheduleOutcome.REJECTED, reason=str(e)
            )

        try:
            notification_id = await self._port.schedule(
                task_id,
                build_reminder_payload(scheduled),
                scheduled.timer.duration_minutes,
            )
        except Exception as e:
            failure = NotificationSchedulingFailure(task_id, e)
            log.error(
                "notification_scheduling_failed",
                task_id=task_id,
                error_type=type(e).__name__,
                error=str(failure),
            )
            await self._commit(scheduled)
            return ScheduleResult(
                task_id=task_id, outcome=ScheduleOutcome.FAILED, reason=str(failure)
            )

        if self._closed:
            # 视图已销毁：撤回刚调度的通知，不写入状态
            await self._cancel(task_id)
            log.warning("schedule_dropped_after_close", task_id=task_id)
            return ScheduleResult(
                task_id=task_id, outcome=ScheduleOutcome.REJECTED, reason="closed"
            )

        activated = timer.activate(scheduled, notification_id, self._clock())
        await self._commit(activated)
        await self._dedup.mark_sent(task_id)

        log.info(
            "notification_scheduled",
            task_id=task_id,
            notification_id=notification_id,
            duration_minutes=activated.timer.duration_minutes,
        )
        return ScheduleResult(
            task_id=task_id,
            outcome=ScheduleOutcome.SCHEDULED,
            notification_id=notification_id,
        )

    async def _preempt(self, task: Task) -> bool:
        """非选中任务失去准入：ACTIVE -> SCHEDULED，取消通知

        持锁后重新读取：并发的完成或到期已提交时不再覆盖。
        """
        async with self._lock_for(task.task_id):
            task = await self._load(task.task_id)
            if not _holds_active_timer(task):
                return False
            await self._cancel(task.task_id)
            # 通知已撤回，再次准入不属于重复调度
            await self._dedup.forget(task.task_id)
            try:
                preempted = timer.preempt(task, self._clock())
            except InvalidTransitionError as e:
                log.warning("preempt_rejected", task_id=task.task_id, error=str(e))
                return False
            await self._commit(preempted)
            log.info("task_preempted", task_id=task.task_id)
            return True

    async def _strip_stale(self, task: Task) -> None:
        async with self._lock_for(task.task_id):
            task = await self._load(task.task_id)
            if (
                not _holds_active_timer(task)
                or not timer.is_stale(task, self._clock())
                or task.timer.notification_id is None
            ):
                return
            await self._cancel(task.task_id)
            await self._commit(timer.strip_notification(task, self._clock()))
            log.info("stale_notification_stripped", task_id=task.task_id)

    # ============================================================
    # 用户意图
    # ============================================================

    async def create_task(
        self,
        owner_id: str,
        title: str,
        priority: Priority = Priority.MEDIUM,
        allowed_intervals: list[int] | None = None,
        subtask_count: int = 0,
    ) -> Task | None:
        """创建 PENDING/IDLE 任务并重新准入"""
        if self._closed:
            return None

        now = self._clock()
        intervals = (
            list(allowed_intervals)
            if allowed_intervals is not None
            else [self._default_interval]
        )
        try:
            task = Task(
                task_id=str(ULID()),
                owner_id=owner_id,
                title=title,
                priority=priority,
                allowed_intervals=intervals,
                subtask_count=subtask_count,
                timer=TimerState(
                    duration_minutes=intervals[0] if intervals else self._default_interval
                ),
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            log.warning("create_task_rejected", owner_id=owner_id, error=str(e))
            return None

        self._view.predict(task)
        try:
            await create_task_atomically(
                self._stores.conn, self._stores.task_store, task
            )
        except PersistenceFailure as e:
            log.error(
                "task_create_failed",
                task_id=task.task_id,
                error=str(e.original_error),
            )
            return None
        self._view.apply_document(task)
        log.info("task_created", task_id=task.task_id, owner_id=owner_id)

        await self.admit_next(owner_id)
        return await self._load(task.task_id) or task

    async def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        priority: Priority | None = None,
        allowed_intervals: list[int] | None = None,
        duration_minutes: int | None = None,
        subtask_count: int | None = None,
    ) -> Task | None:
        """原地编辑

        已准入任务的时长变化时取消并完整重新调度（新的 start_time）；
        其余情况只修改字段，不干扰计时。优先级变化后重新准入。
        """
        async with self._lock_for(task_id):
            task = await self._load(task_id)
            if task is None or task.status == TaskStatus.DELETED:
                log.info("update_task_not_found", task_id=task_id)
                return None

            updates: dict = {"updated_at": self._clock()}
            if title is not None:
                updates["title"] = title
            if priority is not None:
                updates["priority"] = priority
            if allowed_intervals is not None:
                updates["allowed_intervals"] = list(allowed_intervals)
            if subtask_count is not None:
                updates["subtask_count"] = subtask_count

            try:
                patched = Task.model_validate({**task.model_dump(), **updates})
            except ValidationError as e:
                log.warning("update_task_rejected", task_id=task_id, error=str(e))
                return None

            new_duration = task.timer.duration_minutes
            if duration_minutes is not None:
                new_duration = duration_minutes
            elif new_duration not in patched.allowed_intervals:
                new_duration = resolve_interval(patched, 0, self._default_interval)

            if patched.allowed_intervals:
                try:
                    timer.validate_duration(patched, new_duration)
                except InvalidIntervalError as e:
                    log.warning("update_task_rejected", task_id=task_id, error=str(e))
                    return None

            duration_changed = new_duration != task.timer.duration_minutes
            restart = task.is_admitted and duration_changed
            if restart:
                # 先撤回旧通知并回到 SCHEDULED，调度被跳过时状态依旧一致
                await self._cancel(task_id)
                await self._dedup.forget(task_id)
                try:
                    patched = timer.schedule(patched, new_duration, self._clock())
                except (InvalidIntervalError, InvalidTransitionError) as e:
                    log.warning("update_task_rejected", task_id=task_id, error=str(e))
                    return None
            else:
                patched = patched.model_copy(
                    update={
                        "timer": patched.timer.model_copy(
                            update={"duration_minutes": new_duration}
                        )
                    }
                )
            if not await self._commit(patched):
                return None

            if restart:
                await self._schedule(task_id, patched)

        if priority is not None and priority != task.priority:
            await self.admit_next(task.owner_id)
        return await self._load(task_id)

    async def complete_task(self, task_id: str) -> CompletionResult:
        """完成级联：取消通知 -> COMPLETED -> 标记去重 -> 重新准入 -> 计入 XP"""
        async with self._lock_for(task_id):
            task = await self._load(task_id)
            if task is None or task.status == TaskStatus.DELETED:
                log.info("complete_task_not_found", task_id=task_id)
                return CompletionResult(task_id=task_id, found=False)
            if task.status == TaskStatus.COMPLETED:
                return CompletionResult(task_id=task_id, task=task)

            await self._cancel(task_id)
            try:
                completed = timer.complete(task, self._clock())
            except InvalidTransitionError as e:
                log.warning("complete_task_rejected", task_id=task_id, error=str(e))
                return CompletionResult(task_id=task_id, task=task)
            completed = completed.model_copy(update={"status": TaskStatus.COMPLETED})
            await self._commit(completed)
            await self._dedup.mark_sent(task_id)

        if self._closed:
            return CompletionResult(task_id=task_id, task=completed)

        log.info("task_completed", task_id=task_id, owner_id=completed.owner_id)
        admission = await self.admit_next(completed.owner_id)

        award = None
        if self._leveling is not None:
            try:
                award = await self._leveling.add_xp(completed.owner_id, completed)
            except Exception as e:
                log.error(
                    "xp_award_failed",
                    task_id=task_id,
                    error_type=type(e).__name__,
                )

        return CompletionResult(
            task_id=task_id, task=completed, award=award, admission=admission
        )

    async def reschedule_task_notification(
        self, task_id: str, interval_index: int = 0
    ) -> RescheduleResult:
        """重新调度

        reschedule_count 加一并回到 SCHEDULED；只有当前已准入的任务
        才会立即执行调度算法，其余任务等待下一次准入。
        """
        async with self._lock_for(task_id):
            task = await self._load(task_id)
            if task is None or task.status == TaskStatus.DELETED:
                log.info("reschedule_task_not_found", task_id=task_id)
                return RescheduleResult(task_id=task_id, found=False)

            was_admitted = task.is_admitted
            duration = resolve_interval(task, interval_index, self._default_interval)
            if was_admitted:
                await self._cancel(task_id)

            try:
                rescheduled = timer.reschedule(task, duration, self._clock())
            except InvalidTransitionError as e:
                log.warning("reschedule_rejected", task_id=task_id, error=str(e))
                return RescheduleResult(task_id=task_id, task=task)
            if rescheduled.status != TaskStatus.PENDING:
                rescheduled = rescheduled.model_copy(
                    update={"status": TaskStatus.PENDING}
                )
            await self._commit(rescheduled)

            log.info(
                "task_rescheduled",
                task_id=task_id,
                duration_minutes=duration,
                reschedule_count=rescheduled.reschedule_count,
                was_admitted=was_admitted,
            )

            schedule = None
            if was_admitted:
                schedule = await self._schedule(task_id, rescheduled)

        return RescheduleResult(
            task_id=task_id,
            task=await self._load(task_id) or rescheduled,
            was_admitted=was_admitted,
            schedule=schedule,
        )

    async def delete_task(self, task_id: str) -> bool:
        """软删除：取消通知、清理去重标记、重新准入"""
        async with self._lock_for(task_id):
            task = await self._load(task_id)
            if task is None:
                log.info("delete_task_not_found", task_id=task_id)
                return False
            if task.status == TaskStatus.DELETED:
                return True

            await self._cancel(task_id)
            deleted = task.model_copy(
                update={
                    "status": TaskStatus.DELETED,
                    "timer": task.timer.model_copy(update={"notification_id": None}),
                    "updated_at": self._clock(),
                }
            )
            await self._commit(deleted)
            await self._dedup.forget(task_id)

        log.info("task_deleted", task_id=task_id)
        await self.admit_next(task.owner_id)
        return True

    async def expire_task(self, task_id: str) -> Task | None:
        """经一次性闩锁的 ACTIVE -> EXPIRED

        Returns:
            到期后的 Task；闩锁已触发或任务不在 ACTIVE 时返回 None
        """
        async with self._lock_for(task_id):
            task = await self._load(task_id)
            if task is None or task.status != TaskStatus.PENDING:
                return None

            fired_task, fired = timer.try_fire_latch(task)
            if not fired:
                log.debug("expiry_latch_ignored", task_id=task_id)
                return None

            await self._cancel(task_id)
            expired = timer.expire(fired_task, self._clock())
            await self._commit(expired)
            if self._closed:
                return None

            log.info("task_expired", task_id=task_id, owner_id=task.owner_id)
            return expired

    async def mark_prompt_displayed(self, task_id: str) -> bool:
        """UI 已展示到期提醒弹窗；此后恢复器不再重复提示该周期"""
        async with self._lock_for(task_id):
            task = await self._load(task_id)
            if (
                task is None
                or task.status != TaskStatus.PENDING
                or task.timer.phase != TimerPhase.EXPIRED
            ):
                return False
            if task.timer.prompt_displayed:
                return True
            marked = task.model_copy(
                update={
                    "timer": task.timer.model_copy(update={"prompt_displayed": True}),
                    "updated_at": self._clock(),
                }
            )
            if not await self._commit(marked):
                return False
            log.info("expiry_prompt_displayed", task_id=task_id)
            return True

    # ============================================================
    # 内部工具
    # ============================================================

    def _lock_for(self, key: str) -> asyncio.Lock:
        """获取 key 级别锁，序列化同一任务（或同一 owner 准入）的状态变更"""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _load(self, task_id: str) -> Task | None:
        try:
            return await self._stores.task_store.get_task(task_id)
        except Exception as e:
            log.error(
                "task_load_failed",
                task_id=task_id,
                error_type=type(e).__name__,
            )
            return None

    async def _list_pending(self, owner_id: str) -> list[Task]:
        try:
            return await self._stores.task_store.list_tasks(
                owner_id, status=TaskStatus.PENDING
            )
        except Exception as e:
            log.error(
                "pending_tasks_load_failed",
                owner_id=owner_id,
                error_type=type(e).__name__,
            )
            return []

    async def _cancel(self, task_id: str) -> None:
        try:
            await self._port.cancel(task_id)
        except Exception as e:
            log.warning(
                "notification_cancel_failed",
                task_id=task_id,
                error_type=type(e).__name__,
            )

    async def _commit(self, task: Task) -> bool:
        """持久化一次状态变更

        写入前记录为预测，成功后确认到 TaskView；
        失败时预测保留（视图与存储暂时分歧），记录日志后继续。
        """
        if self._closed:
            log.warning("commit_dropped_after_close", task_id=task.task_id)
            return False

        self._view.predict(task)
        try:
            await save_task_atomically(
                self._stores.conn, self._stores.task_store, task
            )
        except TaskNotFoundError:
            log.warning("commit_task_not_found", task_id=task.task_id)
            return False
        except PersistenceFailure as e:
            log.error(
                "task_persist_failed",
                task_id=task.task_id,
                error=str(e.original_error),
            )
            return False

        self._view.apply_document(task)
        return True
