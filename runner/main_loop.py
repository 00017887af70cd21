"""
eurusd-bot Runner: Main Loop

Wires config, broker, predictor, event bus, alerting, metrics, orchestrator
and safety machine together and runs the session.

Flow:
1. Load and schema-check config
2. Initialize safety (limit validation)
3. Verify account
4. Start trading (live sessions ask for confirmation on stdin)
5. Run until SIGINT/SIGTERM, emergency stop, or --once completes
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from analytics.performance import format_summary
from core.exceptions import ConfigurationError
from core.exchange_oanda import OandaExchange
from core.paper_broker import PaperBroker
from core.safety import SafetyStateMachine
from core.trading_cycle import CycleOrchestrator
from infra.alerting import AlertService
from infra.events import EventBus, SafetyStateChanged
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from strategy.predictor import MomentumPredictor
from tools.config_validator import BotConfig, load_config, validate_safety_limits, with_interval

logger = logging.getLogger(__name__)


def setup_logging(config: BotConfig) -> None:
    handlers = [logging.StreamHandler()]
    log_file = config.logging.file
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


async def confirm_via_stdin(prompt: str) -> bool:
    print("=" * 80)
    print(prompt)
    print("=" * 80)
    answer = await asyncio.to_thread(input, "Type 'yes' to start live trading: ")
    return answer.strip().lower() == "yes"


class TradingLoop:
    """
    One bot session.

    Responsibilities:
    - Build collaborators from config
    - Restore and persist emergency-stop history
    - Drive the safety transitions
    - Shut down cleanly on signals
    """

    def __init__(self, config: BotConfig, paper: bool = False, paper_balance: float = 10_000.0):
        self.config = config
        self.paper = paper
        self.bus = EventBus()

        oanda = OandaExchange.from_config(config)
        self.broker = PaperBroker(balance=paper_balance, market_data=oanda) if paper else oanda

        self.orchestrator = CycleOrchestrator(config, self.broker, MomentumPredictor(), bus=self.bus)
        self.safety = SafetyStateMachine(
            config, self.broker, self.orchestrator, bus=self.bus, confirm=confirm_via_stdin,
        )

        self.alerts = AlertService.from_config(config.alerting)
        self.alerts.attach(self.bus)
        self.metrics = MetricsRecorder(enabled=config.metrics.enabled, port=config.metrics.port)
        self.metrics.attach(self.bus)

        self.state_store = StateStore(config.state.file)
        history, active = self.state_store.load_emergency_history()
        if history:
            self.safety.restore(history, active)
        self.bus.subscribe(SafetyStateChanged, lambda _event: self.persist())

        logger.info(
            f"Initialized TradingLoop ({config.environment.value}"
            f"{', paper orders' if paper else ''})"
        )

    def persist(self) -> None:
        try:
            self.state_store.save_session(self.config, self.safety.snapshot())
        except OSError as e:
            logger.error(f"Failed to persist state: {e}")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda s=sig: asyncio.ensure_future(self._handle_stop(s)))
            except NotImplementedError:  # pragma: no cover - Windows
                signal.signal(sig, lambda *_, s=sig: asyncio.ensure_future(self._handle_stop(s)))

    async def _handle_stop(self, sig) -> None:
        logger.warning(f"Shutdown signal {sig!r} received; stopping after the current step")
        await self.safety.manual_stop()
        await self.orchestrator.stop()

    async def run(self, once: bool = False) -> int:
        try:
            self.safety.initialize()
        except ConfigurationError as e:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            for idx, error in enumerate(e.errors, start=1):
                logger.error(f"{idx:>2}. {error}")
            logger.error("=" * 80)
            return 1

        self.metrics.start()

        verified = await self.safety.verify_account()
        if not verified.success:
            logger.error(verified.message)
            return 1

        started = await self.safety.start_trading(schedule=not once)
        if not started.success:
            logger.error(f"Trading not started: {started.message}")
            self.persist()
            return 1

        if once:
            result = await self.orchestrator.run_cycle()
            logger.info(f"Single cycle finished: {result.status} {result.no_trade_reason or ''}".rstrip())
            await self.safety.manual_stop()
        else:
            self._install_signal_handlers()
            await self.orchestrator.wait_stopped()

        self.persist()
        logger.info(f"Session summary: {format_summary(self.orchestrator.performance)}")
        return 2 if self.safety.state.emergency_stop_active else 0


def main(argv: Optional[list] = None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="eurusd-bot EUR/USD trading bot")
    parser.add_argument("--config", default="config/demo.yaml", help="Config file (default: config/demo.yaml)")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--paper", action="store_true", help="Simulate orders locally; market data from OANDA")
    parser.add_argument("--paper-balance", type=float, default=10_000.0, help="Starting paper balance")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles (overrides config)")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        if args.interval is not None:
            config = with_interval(config, args.interval)
    except ConfigurationError as e:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
        for error in e.errors:
            logger.error(error)
        return 1

    setup_logging(config)
    errors = validate_safety_limits(config)
    if errors:
        logger.error(f"Invalid configuration: {len(errors)} error(s) found")
        for idx, error in enumerate(errors, start=1):
            logger.error(f"{idx:>2}. {error}")
        return 1

    loop = TradingLoop(config, paper=args.paper, paper_balance=args.paper_balance)
    return asyncio.run(loop.run(once=args.once))


if __name__ == "__main__":
    sys.exit(main())
