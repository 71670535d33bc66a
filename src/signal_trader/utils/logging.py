"""结构化日志配置模块。

基于 structlog，输出 JSON 或彩色控制台格式；会话级上下文（交易对、运行模式）
通过 contextvars 绑定到每条日志。
"""

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import Processor

if TYPE_CHECKING:
    from signal_trader.config import Settings

# 第三方库日志过于冗长，只保留警告以上
_NOISY_LOGGERS = ("websockets", "urllib3", "asyncio")

# 行情源事件中属于正常生命周期的类型
_FEED_LIFECYCLE_EVENTS = frozenset({"connected", "closed"})


def setup_logging(settings: "Settings | None" = None) -> None:
    """配置结构化日志系统。

    可重复调用；每次调用都会替换标准库根处理器并重新绑定会话上下文。
    """
    from signal_trader.config import LogFormat, get_settings

    settings = settings or get_settings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if settings.log_format == LogFormat.JSON:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(symbol=settings.symbol, mode=settings.mode.value)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """获取结构化日志记录器，名称约定为 ``signal_trader.<模块>``。"""
    return structlog.get_logger(name)


def log_trade_signal(
    logger: structlog.stdlib.BoundLogger,
    *,
    symbol: str,
    signal: str,
    price: float,
    **kwargs: Any,
) -> None:
    """记录非 Hold 的交易信号。"""
    logger.info("trade_signal", symbol=symbol, signal=signal, price=price, **kwargs)


def log_feed_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    recoverable: bool = True,
    **kwargs: Any,
) -> None:
    """记录行情源事件；连接与关闭为 info，断线与断档为 warning。"""
    emit = logger.info if event_type in _FEED_LIFECYCLE_EVENTS else logger.warning
    emit("feed_event", event_type=event_type, recoverable=recoverable, **kwargs)


def log_order_execution(
    logger: structlog.stdlib.BoundLogger,
    *,
    symbol: str,
    side: str,
    quantity: float,
    status: str,
    price: float | None = None,
    order_id: str | None = None,
    **kwargs: Any,
) -> None:
    """记录已成交的开仓或平仓。"""
    logger.info(
        "order_execution",
        symbol=symbol,
        side=side,
        quantity=quantity,
        status=status,
        price=price,
        order_id=order_id,
        **kwargs,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """记录风控拒绝等事件。"""
    logger.warning("risk_event", event_type=event_type, action=action, **kwargs)
