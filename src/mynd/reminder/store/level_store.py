"""LevelStore SQLite 实现"""

from datetime import datetime

import aiosqlite

from ..models.level import LevelProfile


class SqliteLevelStore:
    """LevelStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def get_profile(self, owner_id: str) -> LevelProfile | None:
        cursor = await self._conn.execute(
            """
            SELECT owner_id, level, current_xp, next_level_xp, total_xp,
                   total_tasks_completed, last_updated
            FROM level_profiles WHERE owner_id = ?
            """,
            (owner_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return LevelProfile(
            owner_id=row[0],
            level=row[1],
            current_xp=row[2],
            next_level_xp=row[3],
            total_xp=row[4],
            total_tasks_completed=row[5],
            last_updated=datetime.fromisoformat(row[6]),
        )

    async def save_profile(self, profile: LevelProfile) -> None:
        """写入或覆盖等级档案并提交"""
        await self._conn.execute(
            """
            INSERT INTO level_profiles (owner_id, level, current_xp, next_level_xp,
                                        total_xp, total_tasks_completed, last_updated)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(owner_id) DO UPDATE SET
                level = excluded.level,
                current_xp = excluded.current_xp,
                next_level_xp = excluded.next_level_xp,
                total_xp = excluded.total_xp,
                total_tasks_completed = excluded.total_tasks_completed,
                last_updated = excluded.last_updated
            """,
            (
                profile.owner_id,
                profile.level,
                profile.current_xp,
                profile.next_level_xp,
                profile.total_xp,
                profile.total_tasks_completed,
                profile.last_updated.isoformat(),
            ),
        )
        await self._conn.commit()
