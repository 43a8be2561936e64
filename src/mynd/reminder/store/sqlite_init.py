"""SQLite 数据库初始化

PRAGMA 配置 + 三张表 DDL + 索引创建。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# tasks 表 DDL（timer 以 JSON 内嵌存储）
_TASKS_DDL = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id           TEXT PRIMARY KEY,
    owner_id          TEXT NOT NULL,
    title             TEXT NOT NULL DEFAULT '',
    priority          TEXT NOT NULL DEFAULT 'Medium',
    allowed_intervals TEXT NOT NULL DEFAULT '[5]',
    status            TEXT NOT NULL DEFAULT 'Pending',
    timer             TEXT NOT NULL DEFAULT '{}',
    reschedule_count  INTEGER NOT NULL DEFAULT 0,
    subtask_count     INTEGER NOT NULL DEFAULT 0,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL
);
"""

_TASKS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_tasks_owner_status ON tasks(owner_id, status);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at);",
]

# level_profiles 表 DDL
_LEVEL_PROFILES_DDL = """
CREATE TABLE IF NOT EXISTS level_profiles (
    owner_id              TEXT PRIMARY KEY,
    level                 INTEGER NOT NULL DEFAULT 1,
    current_xp            INTEGER NOT NULL DEFAULT 0,
    next_level_xp         INTEGER NOT NULL DEFAULT 100,
    total_xp              INTEGER NOT NULL DEFAULT 0,
    total_tasks_completed INTEGER NOT NULL DEFAULT 0,
    last_updated          TEXT NOT NULL
);
"""

# kv 表 DDL（本地持久化键值存储，不自带 TTL）
_KV_DDL = """
CREATE TABLE IF NOT EXISTS kv (
    key    TEXT PRIMARY KEY,
    value  TEXT NOT NULL
);
"""


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    await conn.execute(_TASKS_DDL)
    await conn.execute(_LEVEL_PROFILES_DDL)
    await conn.execute(_KV_DDL)

    for idx_sql in _TASKS_INDEXES:
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效"""
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
