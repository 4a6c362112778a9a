"""
Command-line runner

Usage:
    custody-sweep [--config PATH] run [--interval-ms N] [--threshold-usd X]
    custody-sweep [--config PATH] check
    custody-sweep [--config PATH] onboard --name NAME [--device ID] [--phrase-file PATH]
    custody-sweep [--config PATH] history [--wallet ID] [--limit N]
"""

import argparse
import asyncio
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from loguru import logger

from .balance_aggregator import BalanceAggregator
from .chain_clients import ChainClientFactory, UtxoBalanceLookup
from .endpoint_resolver import TieredEndpointResolver
from .errors import ValidationError
from .key_derivation import KeyDerivationEngine
from .notifications import NotificationSink, build_notifier
from .onboarding import onboard_wallet
from .price_cache import CoinGeckoPriceSource, PriceCache
from .seed_vault import SeedVault
from .settings import Settings, load_settings, setup_logging
from .sweep_executor import SweepExecutor
from .threshold_monitor import ThresholdMonitor
from .wallet_store import WalletStore


@dataclass
class CustodyApp:
    """Wired components for one process"""
    settings: Settings
    store: WalletStore
    engine: KeyDerivationEngine
    vault: SeedVault
    resolver: TieredEndpointResolver
    utxo_lookup: UtxoBalanceLookup
    price_source: CoinGeckoPriceSource
    notifier: NotificationSink
    monitor: ThresholdMonitor

    async def close(self) -> None:
        """Release HTTP sessions, pooled clients and the database"""
        logger.info("Starting graceful shutdown...")
        for name, closer in (
            ("endpoint pool", self.resolver.close),
            ("explorer session", self.utxo_lookup.close),
            ("price source", self.price_source.close),
            ("notifier", self.notifier.close),
        ):
            try:
                await asyncio.wait_for(closer(), timeout=10.0)
            except Exception as e:
                logger.warning(f"Error closing {name}: {e}")
        self.store.close()
        logger.info("✓ Shutdown complete")


def build_app(settings: Settings) -> CustodyApp:
    store = WalletStore(settings.database_path)
    store.ensure_monitor_config(settings.monitor_config_defaults())

    engine = KeyDerivationEngine()
    try:
        vault = SeedVault(store, settings.seed_encryption_key)
    except ValidationError:
        store.close()
        raise
    resolver = TieredEndpointResolver(
        ChainClientFactory(settings.endpoints.request_timeout_seconds, settings.endpoints.tron_api_key),
        probe_timeout=settings.endpoints.probe_timeout_seconds,
    )
    utxo_lookup = UtxoBalanceLookup(settings.endpoints.request_timeout_seconds)
    price_source = CoinGeckoPriceSource(settings.prices.api_url, settings.prices.timeout_seconds)
    price_cache = PriceCache(price_source, ttl_seconds=settings.prices.ttl_seconds)
    notifier = build_notifier(settings)

    executor = SweepExecutor(
        resolver,
        engine,
        vault.load_seed,
        tron_native_reserve_sun=settings.sweep.tron_native_reserve_sun,
        tron_fee_limit_sun=settings.sweep.tron_fee_limit_sun,
        store=store,
    )
    monitor = ThresholdMonitor(
        store,
        BalanceAggregator(resolver, utxo_lookup),
        price_cache,
        executor,
        notifier,
        settings,
    )
    return CustodyApp(settings, store, engine, vault, resolver, utxo_lookup,
                      price_source, notifier, monitor)


# ============================================================================
# Commands
# ============================================================================

async def cmd_run(app: CustodyApp, args) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    await app.monitor.start(args.interval_ms, args.threshold_usd)
    await stop_event.wait()
    app.monitor.stop()
    await app.monitor.wait_closed()
    return 0


async def cmd_check(app: CustodyApp, args) -> int:
    results = await app.monitor.check_all_wallets()
    print("\n" + "=" * 80)
    print("CUSTODY CHECK")
    print("=" * 80)
    if not results:
        print("✓ No wallet above threshold")
    for result in results:
        print(f"🚨 {result.wallet_name} ({result.wallet_id}): ${result.total_usd:,.2f}")
        if result.sweep:
            for outcome in result.sweep.outcomes:
                print(f"   {outcome.chain_id:<12} {outcome.status:<14} {len(outcome.transfers)} transfer(s)")
            if result.sweep.error:
                print(f"   ✗ {result.sweep.error_kind}: {result.sweep.error}")
    print("=" * 80 + "\n")
    return 0


async def cmd_onboard(app: CustodyApp, args) -> int:
    phrase = None
    if args.phrase_file:
        phrase = Path(args.phrase_file).read_text(encoding='utf-8').strip()

    result = await onboard_wallet(
        app.store, app.engine, app.vault, app.notifier,
        name=args.name, device_id=args.device, seed_phrase=phrase,
    )
    print(f"\nWallet {result.wallet.name} ({result.wallet.id})")
    for chain_id, address in result.addresses.items():
        print(f"  {chain_id:<12} {address}")
    for failure in result.failures:
        print(f"  ✗ {failure.chain_id:<10} {failure.error}")
    if result.generated_phrase:
        print("\nGenerated seed phrase (store it offline now, it will not be shown again):")
        print(f"  {result.generated_phrase}")
    return 0


async def cmd_history(app: CustodyApp, args) -> int:
    rows = app.store.get_sweep_history(args.wallet, args.limit)
    if not rows:
        print("No sweep history")
        return 0
    for row in rows:
        status = "✓" if row['status'] == 'success' else "✗"
        detail = row['tx_hash'] or f"{row['error_kind']}: {row['error_message']}"
        print(f"{status} {row['created_at']} {row['wallet_id']} {row['chain_id']:<10} "
              f"{row['symbol'] or '':<6} {row['amount'] or '':>24} {detail}")
    return 0


COMMANDS = {
    'run': cmd_run,
    'check': cmd_check,
    'onboard': cmd_onboard,
    'history': cmd_history,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='custody-sweep', description='Custodial balance monitor and sweeper')
    parser.add_argument('--config', help='Path to YAML settings file')
    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Start the threshold monitor')
    run.add_argument('--interval-ms', type=int, default=None)
    run.add_argument('--threshold-usd', type=float, default=None)

    sub.add_parser('check', help='Run a single check cycle')

    onboard = sub.add_parser('onboard', help='Create a custodial wallet')
    onboard.add_argument('--name', required=True)
    onboard.add_argument('--device', default=None)
    onboard.add_argument('--phrase-file', default=None, help='Import a seed phrase from a file')

    history = sub.add_parser('history', help='Show the sweep ledger')
    history.add_argument('--wallet', default=None)
    history.add_argument('--limit', type=int, default=50)

    return parser


async def _main(args) -> int:
    settings = load_settings(args.config)
    setup_logging(settings)
    app = build_app(settings)
    try:
        return await COMMANDS[args.command](app, args)
    finally:
        await app.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_main(args))
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        logger.error(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
