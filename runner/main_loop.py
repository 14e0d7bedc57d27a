"""
basketbot Runner: Main Loop

Wires the components from bot.yaml and runs them on their cron schedules.

Flow:
1. Validate configuration (fatal on any violation)
2. Check exchange connectivity
3. Start the single-worker job queue and the cron scheduler
4. Scheduled triggers enqueue invest / rebalance / trailing_stop jobs
5. SIGINT/SIGTERM stop the scheduler; the running job finishes first
"""

import logging
import signal
import sys
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from core.allocation import AllocationCalculator
from core.coingecko import CoinGeckoClient
from core.exceptions import ConfigurationError
from core.exchange_cryptocom import CryptoComExchange
from core.execution import OrderExecutor
from core.invest import InvestOrchestrator
from core.market_data import MarketDataService
from core.rebalance import RebalanceOrchestrator
from core.removal_ledger import RemovalLedger
from core.trailing_stop import TrailingStopMonitor, TrailingStopTracker
from infra.alerting import AlertService
from infra.job_queue import CronScheduler, JobQueue
from infra.metrics import MetricsRecorder
from infra.state_store import portfolio_ath_store, removal_list_store
from tools.config_validator import BotConfig, load_config

logger = logging.getLogger(__name__)

JOB_INVEST = "invest"
JOB_REBALANCE = "rebalance"
JOB_TRAILING_STOP = "trailing_stop"


def configure_logging(config: BotConfig) -> None:
    log_path = Path(config.logging.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )


class PortfolioBot:
    """
    Main orchestrator.

    Responsibilities:
    - Build every component from one validated BotConfig
    - Expose the three jobs to the queue
    - Handle shutdown signals
    """

    def __init__(self, config: BotConfig, exchange=None, market_cap=None, notifier=None,
                 install_signals: bool = True):
        self.config = config

        self.metrics = MetricsRecorder(enabled=config.metrics.enabled, port=config.metrics.port)
        self.exchange = exchange or CryptoComExchange(
            api_key=config.exchange.api_key,
            api_secret=config.exchange.api_secret,
            timeout=config.exchange.timeout_seconds,
        )
        self.market_cap = market_cap or CoinGeckoClient(top=config.top)
        self.notifier = notifier or AlertService.from_config(config.notifications, config.quote)

        self.allocation = AllocationCalculator.from_config(config)
        self.market_data = MarketDataService(self.exchange, self.market_cap, config.quote)
        self.executor = OrderExecutor(
            self.exchange,
            dry_run=config.dry_run,
            delay_seconds=config.exchange.order_delay_seconds,
            metrics=self.metrics,
        )
        self.ledger = RemovalLedger(removal_list_store(config.data_dir), config.removal_hours)
        self.tracker = TrailingStopTracker(portfolio_ath_store(config.data_dir), config.trailing_stop)

        shared = dict(
            allocation=self.allocation,
            ledger=self.ledger,
            market_data=self.market_data,
            executor=self.executor,
            notifier=self.notifier,
            tracker=self.tracker,
            metrics=self.metrics,
        )
        self.invest = InvestOrchestrator(config, **shared)
        self.rebalance = RebalanceOrchestrator(config, **shared)
        self.trailing_stop = TrailingStopMonitor(
            self.tracker,
            self.ledger,
            self.allocation,
            self.market_data,
            self.executor,
            self.notifier,
            fee_currency=config.exchange.fee_currency,
            metrics=self.metrics,
        )

        self.job_queue = JobQueue(self.jobs(), metrics=self.metrics)
        self.scheduler = CronScheduler(self.job_queue, {
            JOB_TRAILING_STOP: config.schedule.trailing_stop,
            JOB_INVEST: config.schedule.investing,
            JOB_REBALANCE: config.schedule.rebalance,
        })

        self._running = True
        if install_signals:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        mode = "DRY_RUN" if config.dry_run else "LIVE"
        logger.info(f"Initialized PortfolioBot (mode={mode}, quote={config.quote}, top={config.top})")

    def jobs(self) -> Dict[str, Callable[[], object]]:
        return {
            JOB_INVEST: self.invest.run,
            JOB_REBALANCE: self.rebalance.run,
            JOB_TRAILING_STOP: self.trailing_stop.check,
        }

    def _handle_stop(self, *_):
        """Stop scheduling; the job in flight runs to completion."""
        logger.warning("Shutdown signal received, finishing current job")
        self._running = False

    def startup_checks(self) -> bool:
        if self.config.dry_run:
            logger.info("DRY_RUN mode - orders are simulated")
        if not self.exchange.check_connectivity():
            logger.error("Cannot reach the exchange with the configured credentials")
            return False
        return True

    def run_once(self, job: str) -> None:
        self.job_queue.run_now(job)

    def run_forever(self, poll_seconds: float = 1.0) -> None:
        self.metrics.start()
        self.job_queue.start()
        self.scheduler.start()
        logger.info("✅ basketbot running")

        try:
            while self._running:
                time.sleep(poll_seconds)
        finally:
            self.scheduler.stop()
            self.job_queue.stop(wait=True)
            logger.info("basketbot stopped")


def main(argv: Optional[list] = None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="basketbot portfolio rebalancer")
    parser.add_argument("--config", default="config/bot.yaml", help="Path to bot.yaml")
    parser.add_argument("--once", choices=[JOB_INVEST, JOB_REBALANCE, JOB_TRAILING_STOP],
                        help="Run one job and exit")
    parser.add_argument("--skip-checks", action="store_true", help="Skip the exchange connectivity check")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
        logger.error("=" * 80)
        logger.error("CONFIGURATION VALIDATION FAILED")
        logger.error("=" * 80)
        for idx, error in enumerate(e.errors, start=1):
            logger.error(f"{idx:>2}. {error}")
        logger.error("=" * 80)
        return 1

    configure_logging(config)
    bot = PortfolioBot(config)

    if not args.skip_checks and not bot.startup_checks():
        return 1

    if args.once:
        bot.run_once(args.once)
    else:
        bot.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
