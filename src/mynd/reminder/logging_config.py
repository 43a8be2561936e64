"""structlog 配置模块

渲染模式与级别取自 EngineConfig（MYND_LOG_FORMAT / MYND_LOG_LEVEL）。
引擎处理事件时通过 contextvars 绑定 owner_id，由 merge_contextvars 并入每条日志。
"""

import logging

import structlog

from .config import EngineConfig, load_engine_config


def build_renderer(config: EngineConfig) -> structlog.types.Processor:
    """dev: pretty print 可读输出；json: 结构化 JSON 输出"""
    if config.log_format == "json":
        return structlog.processors.JSONRenderer(ensure_ascii=False)
    return structlog.dev.ConsoleRenderer()


def setup_logging(config: EngineConfig | None = None) -> None:
    """初始化 structlog 配置"""
    config = config or load_engine_config()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=build_renderer(config),
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, config.log_level, logging.INFO))
