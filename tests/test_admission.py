"""Priority Admission Controller 测试

测试内容：
1. 单一准入：任意 PENDING 集合准入后至多一个 ACTIVE 且持有通知
2. 去重：5 秒内重复调度只产生一次 Port 调用
3. 完成级联：准入下一个最高优先级任务
4. 重新调度：非准入任务零 Port 调用
5. 原地编辑、软删除、持久化失败与销毁后的写入
"""

import asyncio
from datetime import timedelta

import pytest
from mynd.reminder.admission import admission_order, resolve_interval
from mynd.reminder.models import (
    LatchState,
    Priority,
    ScheduleOutcome,
    TaskStatus,
    TimerPhase,
)

OWNER = "owner-1"


async def _pending(store_group):
    return await store_group.task_store.list_tasks(OWNER, status=TaskStatus.PENDING)


async def _admitted(store_group):
    return [t for t in await _pending(store_group) if t.is_admitted]


class TestSingleAdmission:
    async def test_first_task_is_admitted(self, controller, port):
        task = await controller.create_task(OWNER, "写周报", Priority.MEDIUM)
        assert task.is_admitted
        assert task.timer.notification_id == f"task_{task.task_id}"
        assert port.schedule_calls == [task.task_id]

    async def test_highest_rank_wins_and_others_preempted(
        self, controller, port, store_group, make_task, insert_tasks, clock
    ):
        medium = make_task(
            task_id="medium", priority=Priority.MEDIUM, phase=TimerPhase.ACTIVE,
            start_time=clock(), notification_id="task_medium",
        )
        urgent = make_task(task_id="urgent", priority=Priority.URGENT)
        lowest = make_task(
            task_id="lowest", priority=Priority.LOWEST, phase=TimerPhase.ACTIVE,
            start_time=clock(), notification_id="task_lowest",
        )
        await insert_tasks(medium, urgent, lowest)

        result = await controller.admit_next(OWNER)

        assert result.admitted_task_id == "urgent"
        assert sorted(result.preempted_task_ids) == ["lowest", "medium"]
        admitted = await _admitted(store_group)
        assert [t.task_id for t in admitted] == ["urgent"]
        assert port.schedule_calls == ["urgent"]
        assert {"medium", "lowest"} <= set(port.cancel_calls)

        preempted = await store_group.task_store.get_task("medium")
        assert preempted.timer.phase == TimerPhase.SCHEDULED
        assert preempted.timer.notification_id is None
        assert preempted.reschedule_count == 0

    async def test_rank_not_alphabetical(self, controller, make_task, insert_tasks):
        await insert_tasks(
            make_task(task_id="high", priority=Priority.HIGH),
            make_task(task_id="urgent", priority=Priority.URGENT),
        )
        result = await controller.admit_next(OWNER)
        assert result.admitted_task_id == "urgent"

    async def test_ties_break_by_creation_time(self, controller, make_task, insert_tasks):
        first = make_task(task_id="z-first", priority=Priority.HIGH)
        second = make_task(task_id="a-second", priority=Priority.HIGH)
        await insert_tasks(second, first)
        result = await controller.admit_next(OWNER)
        assert result.admitted_task_id == "z-first"
        assert admission_order(first) < admission_order(second)

    async def test_already_admitted_task_untouched(
        self, controller, port, make_task, insert_tasks, clock
    ):
        await insert_tasks(
            make_task(
                task_id="urgent", priority=Priority.URGENT, phase=TimerPhase.ACTIVE,
                start_time=clock(), notification_id="task_urgent",
            ),
            make_task(task_id="lowest", priority=Priority.LOWEST),
        )
        result = await controller.admit_next(OWNER)
        assert result.admitted_task_id == "urgent"
        assert result.schedule is None
        assert port.schedule_calls == []

    async def test_no_pending_tasks(self, controller, port):
        result = await controller.admit_next(OWNER)
        assert result.admitted_task_id is None
        assert port.schedule_calls == []

    async def test_expired_tasks_not_candidates(self, controller, make_task, insert_tasks):
        await insert_tasks(
            make_task(task_id="expired", priority=Priority.URGENT, phase=TimerPhase.EXPIRED),
            make_task(task_id="idle", priority=Priority.LOWEST),
        )
        result = await controller.admit_next(OWNER)
        assert result.admitted_task_id == "idle"

    async def test_stale_active_task_stripped_not_selected(
        self, controller, port, store_group, make_task, insert_tasks, clock
    ):
        await insert_tasks(
            make_task(
                task_id="stale", priority=Priority.URGENT, phase=TimerPhase.ACTIVE,
                start_time=clock() - timedelta(minutes=10), notification_id="task_stale",
            ),
            make_task(task_id="idle", priority=Priority.LOWEST),
        )
        result = await controller.admit_next(OWNER)

        assert result.admitted_task_id == "idle"
        stale = await store_group.task_store.get_task("stale")
        assert stale.timer.phase == TimerPhase.ACTIVE
        assert stale.timer.notification_id is None
        assert "stale" in port.cancel_calls

    async def test_concurrent_admission_passes(self, controller, port, store_group, make_task,
                                               insert_tasks):
        await insert_tasks(
            make_task(task_id="a", priority=Priority.HIGH),
            make_task(task_id="b", priority=Priority.MEDIUM),
            make_task(task_id="c", priority=Priority.LOWEST),
        )
        await asyncio.gather(*(controller.admit_next(OWNER) for _ in range(3)))
        assert port.schedule_calls == ["a"]
        assert len(await _admitted(store_group)) == 1

    @pytest.mark.parametrize("elapsed_minutes", [5, 6])
    async def test_admission_does_not_overwrite_concurrent_expiry(
        self, controller, reconciler, port, store_group, clock, monkeypatch, elapsed_minutes
    ):
        lowest = await controller.create_task(OWNER, "最低", Priority.LOWEST)
        clock.advance(minutes=elapsed_minutes)

        cancel = port.cancel

        async def slow_cancel(task_id: str) -> None:
            await asyncio.sleep(0.05)
            await cancel(task_id)

        monkeypatch.setattr(port, "cancel", slow_cancel)

        fired, urgent = await asyncio.gather(
            reconciler.handle_expiry(lowest.task_id),
            controller.create_task(OWNER, "紧急", Priority.URGENT),
        )

        assert fired is True
        expired = await store_group.task_store.get_task(lowest.task_id)
        assert expired.timer.phase == TimerPhase.EXPIRED
        assert expired.timer.latch == LatchState.CONSUMED
        assert expired.timer.completed_at is not None
        assert [t.task_id for t in await _admitted(store_group)] == [urgent.task_id]


class TestScheduleTaskNotification:
    async def test_duplicate_within_window_skipped(
        self, controller, port, make_task, insert_tasks, clock
    ):
        await insert_tasks(make_task(task_id="t-1"))

        first = await controller.schedule_task_notification("t-1")
        clock.advance(seconds=2)
        second = await controller.schedule_task_notification("t-1")

        assert first.outcome == ScheduleOutcome.SCHEDULED
        assert second.outcome == ScheduleOutcome.SKIPPED
        assert port.schedule_calls == ["t-1"]

    async def test_after_window_schedules_again(
        self, controller, port, make_task, insert_tasks, clock
    ):
        await insert_tasks(make_task(task_id="t-1"))
        await controller.schedule_task_notification("t-1")
        clock.advance(seconds=5)
        again = await controller.schedule_task_notification("t-1")
        assert again.outcome == ScheduleOutcome.SCHEDULED
        assert port.schedule_calls == ["t-1", "t-1"]

    async def test_concurrent_duplicates(self, controller, port, make_task, insert_tasks):
        await insert_tasks(make_task(task_id="t-1"))
        results = await asyncio.gather(
            controller.schedule_task_notification("t-1"),
            controller.schedule_task_notification("t-1"),
        )
        outcomes = sorted(r.outcome for r in results)
        assert outcomes == sorted([ScheduleOutcome.SCHEDULED, ScheduleOutcome.SKIPPED])
        assert port.schedule_calls == ["t-1"]

    async def test_missing_and_unknown_task(self, controller, port):
        missing = await controller.schedule_task_notification("")
        assert missing.outcome == ScheduleOutcome.REJECTED
        unknown = await controller.schedule_task_notification("ghost")
        assert unknown.outcome == ScheduleOutcome.NOT_FOUND
        assert port.schedule_calls == []

    async def test_interval_not_allowed_rejected(
        self, controller, port, store_group, make_task, insert_tasks
    ):
        await insert_tasks(make_task(task_id="t-1", allowed_intervals=[5, 10], duration_minutes=15))
        result = await controller.schedule_task_notification("t-1")
        assert result.outcome == ScheduleOutcome.REJECTED
        assert port.schedule_calls == []
        task = await store_group.task_store.get_task("t-1")
        assert task.timer.phase == TimerPhase.IDLE

    async def test_port_failure_leaves_task_scheduled(
        self, controller, port, store_group, make_task, insert_tasks, monkeypatch
    ):
        await insert_tasks(make_task(task_id="t-1"))

        async def failing_schedule(task_id, payload, delay_minutes):
            raise RuntimeError("permission denied")

        monkeypatch.setattr(port, "schedule", failing_schedule)
        result = await controller.schedule_task_notification("t-1")

        assert result.outcome == ScheduleOutcome.FAILED
        assert "permission denied" in result.reason
        task = await store_group.task_store.get_task("t-1")
        assert task.timer.phase == TimerPhase.SCHEDULED
        assert task.timer.notification_id is None

        # 失败不写入去重标记，可立即手动重试
        monkeypatch.undo()
        retry = await controller.schedule_task_notification("t-1")
        assert retry.outcome == ScheduleOutcome.SCHEDULED

    async def test_persistence_failure_keeps_prediction(
        self, controller, store_group, make_task, insert_tasks, monkeypatch
    ):
        await insert_tasks(make_task(task_id="t-1"))

        async def failing_save(task):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(store_group.task_store, "save_task", failing_save)
        result = await controller.schedule_task_notification("t-1")

        assert result.outcome == ScheduleOutcome.SCHEDULED
        assert controller.view.pending_predictions() == ["t-1"]
        assert controller.view.get("t-1").timer.phase == TimerPhase.ACTIVE
        monkeypatch.undo()
        stored = await store_group.task_store.get_task("t-1")
        assert stored.timer.phase == TimerPhase.IDLE


class TestCompletionCascade:
    async def test_single_task_completion_leaves_none_admitted(
        self, controller, port, store_group
    ):
        task = await controller.create_task(OWNER, "唯一任务", Priority.HIGH)
        result = await controller.complete_task(task.task_id)

        assert result.found is True
        assert result.task.status == TaskStatus.COMPLETED
        assert result.task.timer.phase == TimerPhase.COMPLETED
        assert result.task.timer.completed_at is not None
        assert result.admission.admitted_task_id is None
        assert await _admitted(store_group) == []
        assert task.task_id in port.cancel_calls

    async def test_next_highest_rank_admitted(self, controller, store_group, clock):
        urgent = await controller.create_task(OWNER, "紧急", Priority.URGENT)
        clock.advance(seconds=1)
        lowest = await controller.create_task(OWNER, "最低", Priority.LOWEST)
        clock.advance(seconds=1)
        high = await controller.create_task(OWNER, "高", Priority.HIGH)

        result = await controller.complete_task(urgent.task_id)

        assert result.admission.admitted_task_id == high.task_id
        admitted = await _admitted(store_group)
        assert [t.task_id for t in admitted] == [high.task_id]
        assert lowest.task_id not in [t.task_id for t in admitted]

    async def test_preempted_task_readmitted_immediately(self, controller, store_group, clock):
        lowest = await controller.create_task(OWNER, "最低", Priority.LOWEST)
        clock.advance(seconds=1)
        urgent = await controller.create_task(OWNER, "紧急", Priority.URGENT)
        assert (await store_group.task_store.get_task(lowest.task_id)).is_admitted is False

        await controller.complete_task(urgent.task_id)

        assert (await store_group.task_store.get_task(lowest.task_id)).is_admitted is True

    async def test_completion_awards_xp(self, controller, signals):
        queue = await signals.subscribe(OWNER)
        task = await controller.create_task(
            OWNER, "背单词", Priority.URGENT, allowed_intervals=[5], subtask_count=2
        )
        result = await controller.complete_task(task.task_id)
        assert result.award.earned_xp == 100
        assert queue.get_nowait().earned_xp == 100

    async def test_completion_suppresses_retrigger(self, controller, dedup):
        task = await controller.create_task(OWNER, "任务", Priority.HIGH)
        await controller.complete_task(task.task_id)
        assert await dedup.was_recently_sent(task.task_id) is True

    async def test_complete_unknown_task(self, controller):
        result = await controller.complete_task("ghost")
        assert result.found is False

    async def test_complete_twice_awards_once(self, controller):
        task = await controller.create_task(OWNER, "任务", Priority.HIGH)
        await controller.complete_task(task.task_id)
        again = await controller.complete_task(task.task_id)
        assert again.found is True
        assert again.award is None

    async def test_complete_idle_task(self, controller, store_group, make_task, insert_tasks):
        await insert_tasks(make_task(task_id="idle"))
        result = await controller.complete_task("idle")
        assert result.task.timer.phase == TimerPhase.COMPLETED


class TestReschedule:
    async def test_non_admitted_reschedule_makes_no_port_calls(
        self, controller, port, store_group, clock
    ):
        await controller.create_task(OWNER, "紧急", Priority.URGENT, allowed_intervals=[5, 10])
        clock.advance(seconds=1)
        other = await controller.create_task(
            OWNER, "最低", Priority.LOWEST, allowed_intervals=[5, 10]
        )
        port.schedule_calls.clear()
        port.cancel_calls.clear()

        result = await controller.reschedule_task_notification(other.task_id, 1)

        assert result.was_admitted is False
        assert result.schedule is None
        assert port.schedule_calls == []
        assert port.cancel_calls == []
        stored = await store_group.task_store.get_task(other.task_id)
        assert stored.reschedule_count == 1
        assert stored.timer.duration_minutes == 10
        assert stored.timer.phase == TimerPhase.SCHEDULED

    async def test_admitted_reschedule_schedules_again(self, controller, port, clock):
        task = await controller.create_task(OWNER, "背单词", Priority.HIGH, allowed_intervals=[10, 15])
        clock.advance(seconds=6)

        result = await controller.reschedule_task_notification(task.task_id, 7)

        assert result.was_admitted is True
        assert result.schedule.outcome == ScheduleOutcome.SCHEDULED
        assert result.task.is_admitted
        assert result.task.reschedule_count == 1
        assert result.task.timer.duration_minutes == 10
        assert result.task.timer.start_time == clock()
        payload = port.pending()[0].payload
        assert payload.title == "Task Rescheduled"
        assert payload.body == 'This is the 1st time for "背单词"'

    async def test_admitted_reschedule_within_window_skipped(
        self, controller, store_group, port
    ):
        task = await controller.create_task(OWNER, "任务", Priority.HIGH)
        result = await controller.reschedule_task_notification(task.task_id, 0)

        assert result.schedule.outcome == ScheduleOutcome.SKIPPED
        stored = await store_group.task_store.get_task(task.task_id)
        assert stored.timer.phase == TimerPhase.SCHEDULED
        assert stored.timer.notification_id is None
        assert not port.is_scheduled(task.task_id)

    async def test_reschedule_expired_task(self, controller, store_group, make_task, insert_tasks):
        await insert_tasks(make_task(task_id="t-1", phase=TimerPhase.EXPIRED, reschedule_count=2))
        result = await controller.reschedule_task_notification("t-1", 0)
        assert result.task.timer.phase == TimerPhase.SCHEDULED
        assert result.task.reschedule_count == 3

    async def test_reschedule_unknown_task(self, controller):
        result = await controller.reschedule_task_notification("ghost", 0)
        assert result.found is False

    @pytest.mark.parametrize(
        "intervals,index,expected",
        [
            ([5, 10, 15], 1, 10),
            ([5, 10, 15], 3, 5),
            ([10, 30], -1, 10),
            ([], 0, 5),
        ],
    )
    def test_resolve_interval(self, make_task, intervals, index, expected):
        task = make_task(allowed_intervals=intervals)
        assert resolve_interval(task, index) == expected


class TestEditDeleteCreate:
    async def test_duration_change_restarts_admitted_timer(
        self, controller, port, clock
    ):
        task = await controller.create_task(OWNER, "任务", Priority.HIGH, allowed_intervals=[5, 10])
        clock.advance(minutes=1)

        updated = await controller.update_task(task.task_id, duration_minutes=10)

        assert updated.is_admitted
        assert updated.timer.duration_minutes == 10
        assert updated.timer.start_time == clock()
        assert port.schedule_calls == [task.task_id, task.task_id]

    async def test_duration_change_inside_dedup_window_restarts_timer(
        self, controller, port, store_group, clock
    ):
        task = await controller.create_task(OWNER, "任务", Priority.HIGH, allowed_intervals=[5, 10])
        clock.advance(seconds=2)

        updated = await controller.update_task(task.task_id, duration_minutes=10)

        assert updated.is_admitted
        assert updated.timer.duration_minutes == 10
        assert updated.timer.start_time == clock()
        assert [n.delay_minutes for n in port.pending()] == [10]
        assert port.schedule_calls == [task.task_id, task.task_id]
        assert len(await _admitted(store_group)) == 1

    async def test_edit_non_admitted_does_not_touch_timer(self, controller, port, clock):
        await controller.create_task(OWNER, "紧急", Priority.URGENT)
        clock.advance(seconds=1)
        other = await controller.create_task(
            OWNER, "最低", Priority.LOWEST, allowed_intervals=[5, 10]
        )
        port.schedule_calls.clear()

        updated = await controller.update_task(other.task_id, title="改名", duration_minutes=10)

        assert updated.title == "改名"
        assert updated.timer.duration_minutes == 10
        assert updated.timer.phase == TimerPhase.IDLE
        assert port.schedule_calls == []

    async def test_priority_change_readmits(self, controller, store_group, clock):
        medium = await controller.create_task(OWNER, "中", Priority.MEDIUM)
        clock.advance(seconds=1)
        lowest = await controller.create_task(OWNER, "低", Priority.LOWEST)

        await controller.update_task(lowest.task_id, priority=Priority.URGENT)

        admitted = await _admitted(store_group)
        assert [t.task_id for t in admitted] == [lowest.task_id]
        demoted = await store_group.task_store.get_task(medium.task_id)
        assert demoted.timer.phase == TimerPhase.SCHEDULED

    async def test_invalid_edit_rejected(self, controller):
        task = await controller.create_task(OWNER, "任务", Priority.HIGH, allowed_intervals=[5])
        assert await controller.update_task(task.task_id, duration_minutes=30) is None
        assert await controller.update_task(task.task_id, allowed_intervals=[7]) is None
        assert await controller.update_task("ghost", title="x") is None

    async def test_delete_admitted_cascades(self, controller, store_group, dedup, clock):
        first = await controller.create_task(OWNER, "紧急", Priority.URGENT)
        clock.advance(seconds=1)
        second = await controller.create_task(OWNER, "高", Priority.HIGH)

        assert await controller.delete_task(first.task_id) is True

        deleted = await store_group.task_store.get_task(first.task_id)
        assert deleted.status == TaskStatus.DELETED
        assert deleted.timer.notification_id is None
        assert await dedup.was_recently_sent(first.task_id) is False
        admitted = await _admitted(store_group)
        assert [t.task_id for t in admitted] == [second.task_id]

    async def test_delete_unknown_and_twice(self, controller):
        assert await controller.delete_task("ghost") is False
        task = await controller.create_task(OWNER, "任务")
        assert await controller.delete_task(task.task_id) is True
        assert await controller.delete_task(task.task_id) is True

    async def test_create_with_invalid_intervals(self, controller):
        assert await controller.create_task(OWNER, "任务", allowed_intervals=[7]) is None

    async def test_create_uses_first_interval(self, controller):
        task = await controller.create_task(OWNER, "任务", allowed_intervals=[15, 30])
        assert task.timer.duration_minutes == 15

    async def test_refresh_loads_snapshot(self, controller, make_task, insert_tasks):
        await insert_tasks(make_task(task_id="t-1"), make_task(task_id="t-2"))
        tasks = await controller.refresh(OWNER)
        assert [t.task_id for t in tasks] == ["t-1", "t-2"]
        assert controller.view.get("t-1") is not None


class TestLiveness:
    async def test_commits_dropped_after_close(self, controller, store_group):
        task = await controller.create_task(OWNER, "任务", Priority.HIGH)
        controller.close()

        result = await controller.complete_task(task.task_id)

        assert result.award is None
        stored = await store_group.task_store.get_task(task.task_id)
        assert stored.status == TaskStatus.PENDING
        assert stored.is_admitted

    async def test_no_admission_after_close(self, controller, port, make_task, insert_tasks):
        await insert_tasks(make_task(task_id="t-1"))
        controller.close()
        result = await controller.admit_next(OWNER)
        assert result.admitted_task_id is None
        assert port.schedule_calls == []
        assert await controller.create_task(OWNER, "任务") is None
