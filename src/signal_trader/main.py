"""CLI 入口模块 - Signal Trader 命令行接口。"""

import asyncio
import signal
import sys
from datetime import datetime
from pathlib import Path

import click
from pydantic import ValidationError

from signal_trader import __version__
from signal_trader.config import Settings, get_settings
from signal_trader.data.binance import BinanceDataClient, BinanceFuturesGateway, completed_only
from signal_trader.data.feed import BinanceFuturesFeed
from signal_trader.exec.coordinator import ExecutionCoordinator
from signal_trader.exec.paper import PaperExecutor
from signal_trader.features.indicators import IndicatorParams, compute_indicators
from signal_trader.journal.store import JournalStore
from signal_trader.orchestrator import Orchestrator
from signal_trader.strategy.signals import SignalThresholds, evaluate
from signal_trader.utils.logging import get_logger, setup_logging


def _load_settings() -> Settings:
    """加载配置；校验失败是唯一的启动致命错误。"""
    try:
        settings = get_settings()
    except ValidationError as exc:
        get_logger("signal_trader.main").error(
            "invalid_configuration",
            errors=[f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()],
        )
        sys.exit(1)
    setup_logging(settings)
    return settings


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Signal Trader - 基于技术指标的实时合约信号交易系统。

    实时行情 → 增量指标 → 信号投票 → 风险定仓 → 下单执行
    """
    if version:
        click.echo(f"signal-trader version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


async def run_bot(settings: Settings, *, dry_run: bool, warmup: bool) -> None:
    """组装并运行实时交易流水线，直到收到停止信号。"""
    logger = get_logger("signal_trader.main")
    journal = JournalStore(settings.journal_dir)

    if settings.is_paper_mode or dry_run:
        paper = PaperExecutor(
            settings.journal_dir,
            leverage=settings.leverage,
            initial_equity=settings.paper_initial_equity,
            persist=not dry_run,
        )
        gateway: PaperExecutor | BinanceFuturesGateway = paper
        on_price = paper.mark_price
        initial_state = paper.position_state()
    else:
        gateway = BinanceFuturesGateway(settings)
        on_price = None
        initial_state = None

    coordinator = ExecutionCoordinator.from_settings(
        settings, gateway, initial_state=initial_state
    )
    orchestrator = Orchestrator(
        settings,
        feed=BinanceFuturesFeed.from_settings(settings),
        balance=gateway,
        coordinator=coordinator,
        journal=journal,
        on_price=on_price,
    )

    # 预热：用历史 K 线填充指标
    if warmup:
        try:
            candles = await asyncio.to_thread(
                BinanceDataClient(settings).fetch_candles,
                settings.symbol,
                settings.candle_interval,
                settings.history_limit,
            )
            orchestrator.seed(candles)
        except Exception as exc:  # noqa: BLE001 - start cold rather than not at all.
            logger.warning("warmup_failed", error=str(exc), hint="indicators warm up from live feed")

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_stop)
        except NotImplementedError:
            # Windows 事件循环不支持，依赖 KeyboardInterrupt
            break

    await orchestrator.run()


@cli.command()
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，使用纸交易且不持久化",
)
@click.option(
    "--warmup/--no-warmup",
    default=True,
    help="是否用历史 K 线预热指标",
)
def run(dry_run: bool, warmup: bool) -> None:
    """启动实时交易流水线（Ctrl+C 停止）。"""
    settings = _load_settings()
    logger = get_logger("signal_trader.main")

    # 确保目录存在
    settings.ensure_directories()

    logger.info(
        "starting_pipeline",
        mode=settings.mode.value,
        symbol=settings.symbol,
        interval=settings.candle_interval,
        dry_run=dry_run,
        warmup=warmup,
        timestamp=datetime.now().isoformat(),
    )

    # 验证配置
    if settings.is_live_mode and not dry_run:
        missing = settings.validate_for_live()
        if missing:
            logger.error(
                "missing_required_config",
                missing_keys=missing,
                hint="请在 .env 文件中配置 API 密钥并使用整数杠杆",
            )
            sys.exit(1)

    try:
        asyncio.run(run_bot(settings, dry_run=dry_run, warmup=warmup))
    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("run_failed", error=str(e))
        sys.exit(1)
    logger.info("run_stopped")


@cli.command()
@click.option("--limit", "-n", type=int, default=None, help="拉取的历史 K 线数量")
def indicators(limit: int | None) -> None:
    """拉取历史 K 线，计算指标并显示当前信号。"""
    settings = _load_settings()
    logger = get_logger("signal_trader.main")
    params = IndicatorParams.from_settings(settings)

    try:
        df = BinanceDataClient(settings).fetch_ohlcv(
            settings.symbol,
            settings.candle_interval,
            limit or settings.history_limit,
        )
        df = completed_only(df)
        snapshot = compute_indicators(df, params)
    except Exception as e:
        logger.exception("indicators_failed", error=str(e))
        sys.exit(1)

    price = float(df["close"].iloc[-1]) if not df.empty else None
    result = evaluate(snapshot, price, SignalThresholds.from_settings(settings))

    click.echo(f"{settings.symbol} {settings.candle_interval} ({len(df)} candles)")
    click.echo(f"   Price: {price if price is not None else '-'}")
    for name, value in snapshot.as_dict().items():
        shown = f"{value:.4f}" if value is not None else "warming up"
        click.echo(f"   {name.upper():<9} {shown}")
    click.echo(f"   Signal: {result.label}")


@cli.command()
def status() -> None:
    """显示系统状态和配置摘要。"""
    settings = _load_settings()

    click.echo("=" * 50)
    click.echo("Signal Trader - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo(f"   Symbol: {settings.symbol} @ {settings.candle_interval}")
    click.echo()

    # API 配置状态
    click.echo("[API Configuration]")
    binance_status = "[OK] Configured" if settings.binance_api_key else "[--] Not configured"
    click.echo(f"   Binance API: {binance_status}")
    click.echo(f"   Binance Testnet: {'Yes' if settings.binance_testnet else 'No'}")
    click.echo(f"   Stream: {settings.ws_base_url}")
    click.echo()

    # 指标参数
    click.echo("[Indicators]")
    click.echo(f"   MA/EMA: {settings.ma_period}/{settings.ema_period}")
    click.echo(f"   Bollinger: {settings.bb_period} x {settings.bb_std_dev_multiplier}")
    click.echo(f"   RSI/ATR: {settings.rsi_period}/{settings.atr_period}")
    click.echo(f"   Recompute every: {settings.effective_recompute_interval}s")
    click.echo()

    # 风控参数
    click.echo("[Risk Parameters]")
    click.echo(f"   Risk per trade: {settings.risk_per_trade:.2%}")
    click.echo(f"   Stop loss: {settings.atr_stop_multiplier} ATR")
    click.echo(f"   Reward/risk: {settings.risk_reward_ratio}")
    click.echo(f"   Leverage: {settings.leverage}x")
    click.echo(f"   Trade gap: {settings.trade_gap}s")
    click.echo()

    # 日志配置
    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo()

    # 验证状态
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing or invalid:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require full API configuration")

    click.echo()
    click.echo("=" * 50)


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("signal_trader.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Settings loading"),
        ("pandas", "Data processing"),
        ("numpy", "Numerical computing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
        ("websockets", "Market data stream"),
        ("binance", "Exchange REST client"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 检查配置文件
    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


# 支持 python -m signal_trader.main 调用
if __name__ == "__main__":
    cli()
