"""
Threshold Monitor

Timer-driven loop that values every custodial wallet and sweeps the ones
holding more than the configured USD threshold.

Each cycle:
1. Reload MonitorConfig (fresh snapshot)
2. List custodial wallets
3. For each wallet, one at a time: aggregate balances, value them, sum USD
4. If total > threshold (strict), alert, sweep and notify
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set

from loguru import logger

from .balance_aggregator import ValuedBalanceItem, value_balances
from .errors import GasFeeInsufficient
from .monitor_config import MonitorConfig, load_monitor_config
from .notifications import EventType, NotificationEvent
from .sweep_executor import SweepReport


class MonitorState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class WalletCheckResult:
    """Valuation of one wallet in one cycle"""
    wallet_id: str
    wallet_name: str
    total_usd: float
    threshold_usd: float
    balances: List[ValuedBalanceItem] = field(default_factory=list)
    failed_items: int = 0
    sweep: Optional[SweepReport] = None

    @property
    def exceeded(self) -> bool:
        return self.total_usd > self.threshold_usd

    def __repr__(self):
        flag = "🚨" if self.exceeded else "✓"
        return f"WalletCheckResult({flag} {self.wallet_id}: ${self.total_usd:.2f} / ${self.threshold_usd:.2f})"


class ThresholdMonitor:
    """
    Custodial balance monitor

    Features:
    - Stopped/Running state machine
    - Fresh configuration every cycle
    - Sequential wallet processing, concurrent per-wallet fetches
    - Configurable re-sweep policy ('every_cycle' or 'on_crossing')
    """

    def __init__(self, store, aggregator, price_cache, executor, notifier, settings):
        """
        Args:
            store: WalletStore
            aggregator: BalanceAggregator
            price_cache: PriceCache
            executor: SweepExecutor
            notifier: NotificationSink
            settings: Application settings
        """
        self.store = store
        self.aggregator = aggregator
        self.price_cache = price_cache
        self.executor = executor
        self.notifier = notifier
        self.settings = settings
        self.resweep_policy = settings.monitor.resweep_policy

        self._state = MonitorState.STOPPED
        self._task: Optional[asyncio.Task] = None
        self._retired: List[asyncio.Task] = []
        self._wakeup: Optional[asyncio.Event] = None
        self._interval_override: Optional[int] = None
        self._threshold_override: Optional[float] = None
        self._above_threshold: Set[str] = set()
        self.last_config: Optional[MonitorConfig] = None
        self.last_check_at: Optional[datetime] = None
        self.cycles_completed = 0

        logger.info(f"Threshold monitor initialized (resweep policy: {self.resweep_policy})")

    @property
    def state(self) -> MonitorState:
        return self._state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load_config(self) -> MonitorConfig:
        config = load_monitor_config(self.store, self.settings, self._threshold_override)
        self.last_config = config
        return config

    async def start(self, interval_ms: Optional[int] = None, threshold_usd: Optional[float] = None) -> None:
        """
        Start monitoring; no-op if already running

        Args:
            interval_ms: Poll interval (defaults to the stored config, then settings)
            threshold_usd: Threshold used when the stored config has none
        """
        if self._state is MonitorState.RUNNING:
            logger.info("Threshold monitor already running")
            return

        self._threshold_override = threshold_usd
        self._interval_override = interval_ms or None
        config = self.load_config()
        wakeup = asyncio.Event()
        self._wakeup = wakeup
        self._state = MonitorState.RUNNING

        logger.info(
            f"🔄 Threshold monitor started: every {self.poll_interval_ms / 60000:.1f} min, "
            f"threshold ${config.threshold_usd}"
        )
        if self._task and not self._task.done():
            self._retired.append(self._task)
        self._task = asyncio.create_task(self._run(wakeup))

    def stop(self) -> None:
        """Stop scheduling cycles; a cycle in progress runs to completion"""
        if self._state is MonitorState.STOPPED:
            return
        self._state = MonitorState.STOPPED
        if self._wakeup:
            self._wakeup.set()
        logger.info("Threshold monitor stopped")

    async def wait_closed(self) -> None:
        tasks = self._retired + ([self._task] if self._task else [])
        self._retired = []
        self._task = None
        for task in tasks:
            await task

    async def _run(self, wakeup: asyncio.Event) -> None:
        # A restart replaces self._wakeup; the superseded loop exits after its cycle
        while self._state is MonitorState.RUNNING and self._wakeup is wakeup:
            try:
                await self.check_all_wallets()
            except Exception:
                logger.exception("❌ Monitor cycle failed")

            if self._state is not MonitorState.RUNNING or self._wakeup is not wakeup:
                break
            try:
                await asyncio.wait_for(wakeup.wait(), timeout=self.poll_interval_ms / 1000)
            except asyncio.TimeoutError:
                pass

    @property
    def poll_interval_ms(self) -> int:
        """Interval given to start(), else the one from the latest config load"""
        if self._interval_override:
            return self._interval_override
        if self.last_config:
            return self.last_config.poll_interval_ms
        return self.settings.monitor.poll_interval_ms

    def get_status(self) -> Dict:
        config = self.last_config
        return {
            'state': self._state.value,
            'threshold_usd': config.threshold_usd if config else None,
            'poll_interval_ms': self.poll_interval_ms,
            'last_check_at': self.last_check_at.isoformat() if self.last_check_at else None,
            'cycles_completed': self.cycles_completed,
            'resweep_policy': self.resweep_policy,
        }

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def check_all_wallets(self) -> List[WalletCheckResult]:
        """
        Run one check cycle over every custodial wallet

        Returns:
            Results for wallets above the threshold
        """
        config = self.load_config()
        wallets = self.store.list_wallets()
        logger.info(f"Checking {len(wallets)} wallet(s) against ${config.threshold_usd} threshold")

        exceeded: List[WalletCheckResult] = []
        for wallet in wallets:
            try:
                result = await self.check_wallet(wallet, config)
            except Exception as e:
                logger.exception(f"✗ Error checking wallet {wallet.id}: {e}")
                continue
            if result and result.exceeded:
                exceeded.append(result)

        self.last_check_at = datetime.now(timezone.utc)
        self.cycles_completed += 1
        logger.info(f"✓ Cycle complete: {len(exceeded)} wallet(s) above threshold")
        return exceeded

    async def check_wallet(self, wallet, config: MonitorConfig) -> Optional[WalletCheckResult]:
        if not wallet.networks:
            logger.debug(f"Wallet {wallet.id} has no network addresses")
            return None

        items = await self.aggregator.aggregate([(n.chain_id, n.address) for n in wallet.networks])
        valued = await value_balances(items, self.price_cache)
        result = WalletCheckResult(
            wallet_id=wallet.id,
            wallet_name=wallet.name,
            total_usd=sum(v.value_usd for v in valued),
            threshold_usd=config.threshold_usd,
            balances=valued,
            failed_items=sum(1 for item in items if not item.ok),
        )

        if not result.exceeded:
            self._above_threshold.discard(wallet.id)
            logger.debug(f"{wallet.name}: ${result.total_usd:.2f} (below ${config.threshold_usd})")
            return result

        if self.resweep_policy == 'on_crossing' and wallet.id in self._above_threshold:
            logger.info(f"{wallet.name} still above threshold, already swept on crossing")
            return result

        result.sweep = await self.handle_threshold_exceeded(wallet, result, config)
        # A failed sweep stays armed so the next cycle retries under 'on_crossing'
        if result.sweep.succeeded:
            self._above_threshold.add(wallet.id)
        return result

    def _log_breakdown(self, wallet, result: WalletCheckResult) -> None:
        logger.warning(f"🚨 SECURITY ALERT: wallet {wallet.name} ({wallet.id}) holds "
                       f"${result.total_usd:.2f}, threshold ${result.threshold_usd:.2f}")
        logger.info(f"  {'Chain':<12} {'Symbol':<8} {'Amount':>20} {'USD':>12}")
        for valued in result.balances:
            logger.info(
                f"  {valued.chain_id:<12} {valued.symbol:<8} "
                f"{str(valued.item.amount):>20} {valued.value_usd:>12.2f}"
            )

    async def handle_threshold_exceeded(self, wallet, result: WalletCheckResult,
                                        config: MonitorConfig) -> SweepReport:
        self._log_breakdown(wallet, result)
        amounts = [v.to_dict() for v in result.balances]
        addresses = {n.chain_id: n.address for n in wallet.networks}

        await self.notifier.notify(NotificationEvent(
            type=EventType.THRESHOLD_EXCEEDED,
            wallet_id=wallet.id,
            wallet_name=wallet.name,
            amounts=amounts,
            addresses=addresses,
            total_usd=result.total_usd,
        ))

        report = await self.executor.sweep(wallet, result.balances, config)

        if report.succeeded:
            if report.transfers:
                await self.notifier.notify(NotificationEvent(
                    type=EventType.SWEEP_SUCCESS,
                    wallet_id=wallet.id,
                    wallet_name=wallet.name,
                    amounts=[t.to_dict() for t in report.transfers],
                    addresses={t.chain_id: t.destination for t in report.transfers},
                    tx_hash=report.representative_tx_hash,
                    total_usd=report.moved_value_usd,
                ))
            return report

        if isinstance(report.error, GasFeeInsufficient):
            logger.warning(f"⚠ Wallet {wallet.id} needs native fee top-up: {report.error}")
        await self.notifier.notify(NotificationEvent(
            type=EventType.SWEEP_FAILURE,
            wallet_id=wallet.id,
            wallet_name=wallet.name,
            chain=report.failed_chain,
            amounts=[t.to_dict() for t in report.transfers],
            addresses=addresses,
            tx_hash=report.representative_tx_hash,
            error=str(report.error),
            error_kind=report.error_kind,
            total_usd=result.total_usd,
        ))
        return report
