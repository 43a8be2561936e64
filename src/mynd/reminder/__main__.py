"""CLI 入口模块 -- python -m mynd.reminder <command> <owner_id>

支持的命令：
  reconcile      执行一次前台恢复（刷新快照 -> 恢复过期计时 -> 重新准入）
  rebuild-level  由已完成任务历史重新计算等级档案
"""

import asyncio
import sys

from .config import get_db_path, load_engine_config
from .logging_config import setup_logging

_COMMANDS = ("reconcile", "rebuild-level")


def _usage() -> None:
    print("用法: python -m mynd.reminder <command> <owner_id>")
    print("命令:")
    print("  reconcile      执行一次前台恢复")
    print("  rebuild-level  由已完成任务历史重新计算等级档案")


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 3:
        _usage()
        sys.exit(1)

    command, owner_id = sys.argv[1], sys.argv[2]
    setup_logging(load_engine_config())

    if command == "reconcile":
        asyncio.run(reconcile(owner_id))
    elif command == "rebuild-level":
        asyncio.run(rebuild_level(owner_id))
    else:
        print(f"未知命令: {command}")
        print(f"可用命令: {', '.join(_COMMANDS)}")
        sys.exit(1)


async def reconcile(owner_id: str) -> None:
    """执行一次前台恢复"""
    from .engine import ReminderEngine
    from .notification_port import LocalNotificationPort
    from .store import create_store_group

    db_path = get_db_path()
    print(f"数据库路径: {db_path}")

    store_group = await create_store_group(db_path)
    engine = ReminderEngine(
        owner_id,
        store_group,
        LocalNotificationPort(),
        config=load_engine_config(),
    )

    try:
        result = await engine.on_foreground()
        if result.reconciled_task_id:
            print(f"已恢复过期任务: {result.reconciled_task_id}")
        else:
            print("没有过期任务")
        if result.prompted_task_id:
            # 控制台输出即为提示展示
            print(f"到期提示: {result.prompted_task_id}")
            await engine.mark_prompt_displayed(result.prompted_task_id)
        admitted = result.admission.admitted_task_id if result.admission else None
        print(f"当前准入任务: {admitted or '无'}")
    finally:
        await engine.close()
        await store_group.conn.close()


async def rebuild_level(owner_id: str) -> None:
    """重建等级档案"""
    from .leveling import LevelingEngine
    from .store import create_store_group

    db_path = get_db_path()
    print(f"数据库路径: {db_path}")

    store_group = await create_store_group(db_path)
    try:
        leveling = LevelingEngine(store_group.level_store, store_group.task_store)
        profile = await leveling.rebuild(owner_id)
        print(
            f"重建完成: level={profile.level} "
            f"xp={profile.current_xp}/{profile.next_level_xp} "
            f"total_xp={profile.total_xp} tasks={profile.total_tasks_completed}"
        )
    finally:
        await store_group.conn.close()


if __name__ == "__main__":
    main()
