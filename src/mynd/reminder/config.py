"""配置模块 -- 可通过环境变量覆盖

包含数据库路径、去重窗口、倒计时节拍、周期性恢复间隔与日志输出等可配置项。
"""

import os
from pathlib import Path
from typing import Literal

import structlog
from pydantic import BaseModel, Field, field_validator

log = structlog.get_logger()

# 全局固定的提醒间隔集合（分钟）
NOTIFICATION_INTERVALS: tuple[int, ...] = (5, 10, 15, 30)

# 无可用间隔时的兜底值（分钟）
DEFAULT_INTERVAL: int = 5

# 去重标记的有效期（毫秒）
DEDUP_WINDOW_MS: int = 5000


def _get_base_dir() -> Path:
    """获取 data 基础目录"""
    return Path(os.environ.get("MYND_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "MYND_DB_PATH",
        str(_get_base_dir() / "sqlite" / "mynd.db"),
    )


class EngineConfig(BaseModel):
    """提醒引擎运行参数

    环境变量:
        MYND_DEDUP_WINDOW_MS: 去重窗口（毫秒，默认 5000）
        MYND_COUNTDOWN_TICK_S: 倒计时采样间隔（秒，默认 1）
        MYND_RECONCILE_INTERVAL_S: 周期性恢复间隔（秒，默认 60，0 表示关闭）
        MYND_LOG_FORMAT: 日志渲染模式（dev | json，默认 dev）
        MYND_LOG_LEVEL: 日志级别（默认 INFO）
    """

    dedup_window_ms: int = Field(default=DEDUP_WINDOW_MS, ge=0, description="去重窗口（毫秒）")
    countdown_tick_s: float = Field(default=1.0, gt=0, description="倒计时采样间隔（秒）")
    reconcile_interval_s: float = Field(
        default=60.0,
        ge=0,
        description="周期性恢复间隔（秒），0 表示只在前台切换时恢复",
    )
    default_interval_minutes: int = Field(
        default=DEFAULT_INTERVAL,
        ge=1,
        description="无可用间隔时的兜底时长（分钟）",
    )
    log_format: Literal["dev", "json"] = Field(default="dev", description="日志渲染模式")
    log_level: str = Field(default="INFO", description="根 logger 级别")

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"未知日志级别: {value}")
        return level


_ENV_FIELDS: dict[str, tuple[str, type]] = {
    "MYND_DEDUP_WINDOW_MS": ("dedup_window_ms", int),
    "MYND_COUNTDOWN_TICK_S": ("countdown_tick_s", float),
    "MYND_RECONCILE_INTERVAL_S": ("reconcile_interval_s", float),
    "MYND_LOG_FORMAT": ("log_format", str),
    "MYND_LOG_LEVEL": ("log_level", str),
}


def load_engine_config() -> EngineConfig:
    """从环境变量加载 EngineConfig

    非法取值记录 warning 并回退默认值，不阻塞启动。
    """
    kwargs: dict = {}
    defaults = EngineConfig()

    for env_var, (field_name, caster) in _ENV_FIELDS.items():
        val = os.environ.get(env_var)
        if not val:
            continue
        try:
            # 越界取值同样回退（ValidationError 是 ValueError 子类）
            checked = EngineConfig(**{field_name: caster(val)})
            kwargs[field_name] = getattr(checked, field_name)
        except ValueError:
            log.warning(
                "engine_config_invalid_env",
                env_var=env_var,
                value=val,
                fallback=getattr(defaults, field_name),
            )

    return EngineConfig(**kwargs)
