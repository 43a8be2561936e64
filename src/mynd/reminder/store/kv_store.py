"""本地持久化键值存储 -- SQLite kv 表

get/set/remove，不自带过期机制，由使用方自行判断时效。
"""

import aiosqlite


class SqliteKeyValueStore:
    """KeyValueStore 的 SQLite 实现，每次写入立即提交"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def get(self, key: str) -> str | None:
        cursor = await self._conn.execute(
            "SELECT value FROM kv WHERE key = ?",
            (key,),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        await self._conn.execute(
            "INSERT INTO kv (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
        await self._conn.commit()

    async def remove(self, key: str) -> None:
        await self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        await self._conn.commit()
