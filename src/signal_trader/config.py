"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from signal_trader.utils.timeframes import interval_seconds


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 纸交易
    LIVE = "live"  # 实盘


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置，构造后不可变。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")
    symbol: str = Field(default="BTCUSDT", pattern=r"^[A-Z0-9]+$", description="交易对")
    candle_interval: str = Field(default="1m", description="K 线周期")

    # ==================== Binance API ====================
    binance_api_key: str = Field(default="", description="Binance API Key")
    binance_api_secret: str = Field(default="", description="Binance API Secret")
    binance_testnet: bool = Field(default=True, description="是否使用 Binance 测试网")
    ws_base_url: str = Field(
        default="wss://fstream.binance.com/stream",
        description="WebSocket 组合流地址",
    )
    reconnect_max_delay: float = Field(default=60.0, gt=0, description="最大重连间隔（秒）")
    heartbeat_interval: float = Field(default=5.0, gt=0, description="心跳检测间隔（秒）")

    # ==================== 指标参数 ====================
    ma_period: int = Field(default=14, gt=0, description="MA 周期")
    ema_period: int = Field(default=12, gt=0, description="EMA 周期")
    bb_period: int = Field(default=12, gt=0, description="布林带周期")
    bb_std_dev_multiplier: float = Field(default=2.0, gt=0, description="布林带标准差倍数")
    rsi_period: int = Field(default=9, gt=0, description="RSI 周期")
    atr_period: int = Field(default=7, gt=0, description="ATR 周期")
    buffer_slack: int = Field(default=10, ge=0, description="缓冲区额外容量")
    gap_tolerance: float = Field(
        default=1.5,
        gt=1.0,
        description="时间戳跳变超过 K 线周期的倍数即视为断档",
    )
    history_limit: int = Field(default=500, gt=0, description="预热拉取的历史 K 线数量")

    # ==================== 信号参数 ====================
    rsi_oversold: float = Field(default=30.0, ge=0.0, le=100.0, description="RSI 超卖阈值")
    rsi_overbought: float = Field(default=70.0, ge=0.0, le=100.0, description="RSI 超买阈值")
    strong_vote_threshold: int = Field(default=2, ge=1, le=3, description="强信号票数阈值")

    # ==================== 风控参数 ====================
    risk_per_trade: float = Field(
        default=0.01,
        gt=0.0,
        le=1.0,
        description="单笔风险资金占账户余额比例",
    )
    atr_stop_multiplier: float = Field(default=0.75, gt=0, description="止损 ATR 倍数")
    risk_reward_ratio: float = Field(default=0.8, gt=0, description="止盈/止损距离比")
    leverage: float = Field(default=20.0, gt=0, description="杠杆倍数")
    strength_multiplier: float = Field(default=1.5, gt=1.0, description="强信号仓位放大倍数")
    min_qty: float = Field(default=0.001, gt=0, description="交易所最小下单量")
    max_qty: float = Field(default=1000.0, gt=0, description="交易所最大下单量")
    qty_step: float = Field(default=0.001, gt=0, description="下单量步长")

    # ==================== 执行参数 ====================
    trade_gap: float = Field(default=5.0, gt=0, description="两次开仓最小间隔（秒）")
    recompute_interval: float | None = Field(
        default=None,
        gt=0,
        description="指标重算间隔（秒），默认等于 K 线周期",
    )
    align_recompute: bool = Field(default=True, description="重算定时器对齐到 K 线边界")
    order_max_attempts: int = Field(default=3, ge=1, le=10, description="下单最大尝试次数")
    order_timeout: float = Field(default=10.0, gt=0, description="单次下单超时（秒）")
    paper_initial_equity: float = Field(default=10_000.0, gt=0, description="纸交易初始资金")

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="交易日志存储目录",
    )

    @field_validator("journal_dir", mode="before")
    @classmethod
    def parse_journal_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    @field_validator("candle_interval")
    @classmethod
    def check_candle_interval(cls, v: str) -> str:
        """校验 K 线周期可被解析。"""
        interval_seconds(v)
        return v

    @model_validator(mode="after")
    def check_lot_limits(self) -> "Settings":
        """校验下单量上下限。"""
        if self.min_qty > self.max_qty:
            raise ValueError("min_qty must not exceed max_qty")
        return self

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def is_paper_mode(self) -> bool:
        """是否为纸交易模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为实盘模式。"""
        return self.mode == RunMode.LIVE

    @property
    def candle_seconds(self) -> float:
        """K 线周期秒数。"""
        return float(interval_seconds(self.candle_interval))

    @property
    def effective_recompute_interval(self) -> float:
        """实际使用的重算间隔。"""
        if self.recompute_interval is not None:
            return self.recompute_interval
        return self.candle_seconds

    @property
    def buffer_capacity(self) -> int:
        """缓冲区容量 = 最大指标周期 + 余量。"""
        longest = max(
            self.ma_period,
            self.ema_period,
            self.bb_period,
            self.rsi_period,
            self.atr_period,
        )
        return longest + self.buffer_slack

    def validate_for_live(self) -> list[str]:
        """验证实盘模式的必要配置，返回缺失或不合法的配置项列表。

        交易所只接受整数杠杆，实盘模式下小数杠杆视为不合法。
        """
        required = {
            "BINANCE_API_KEY": self.binance_api_key,
            "BINANCE_API_SECRET": self.binance_api_secret,
        }
        problems = [name for name, value in required.items() if not value]
        if not float(self.leverage).is_integer():
            problems.append("LEVERAGE")
        return problems


# 全局配置实例（延迟初始化）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
