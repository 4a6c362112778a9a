"""
Sweep Executor

Consolidates custodial balances to the configured destination per chain
family while keeping enough native balance to pay fees:

- EVM: reserve (21000 + 100000) * gas price, send native first, then
  tokens with a per-transfer gas check
- TRON: fixed native reserve, tokens sent under a fee ceiling
- UTXO: not executed; the intended transfer is logged
- SOLANA / COSMOS: no auto-transfer support, skipped

The first failing chain group aborts the remaining groups for that
wallet's cycle.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from loguru import logger

from .balance_aggregator import ValuedBalanceItem
from .chain_registry import ChainDescriptor, ChainFamily, find_token, get_chain
from .errors import (
    GasFeeInsufficient,
    InsufficientReserve,
    SweepError,
    SweepNotImplemented,
    ValidationError,
    classify_error,
)
from .key_derivation import DerivedKey, is_valid_address

NATIVE_TRANSFER_GAS = 21000
TOKEN_TRANSFER_GAS = 100000

FAMILY_ORDER = (
    ChainFamily.EVM,
    ChainFamily.TRON,
    ChainFamily.UTXO,
    ChainFamily.SOLANA,
    ChainFamily.COSMOS,
)

STATUS_SUCCESS = 'success'
STATUS_SKIPPED = 'skipped'
STATUS_NOT_EXECUTED = 'not_executed'
STATUS_FAILED = 'failed'


def compute_evm_reserve(gas_price: int) -> int:
    """Native transfer fee plus worst-case token transfer fee"""
    return (NATIVE_TRANSFER_GAS + TOKEN_TRANSFER_GAS) * gas_price


def compute_evm_sweep_amount(balance: int, gas_price: int) -> int:
    """Native amount that can leave the wallet; may be zero or negative"""
    return balance - compute_evm_reserve(gas_price)


def ensure_transferable(amount: int, chain: ChainDescriptor, symbol: str, balance: int) -> int:
    """
    Raises:
        InsufficientReserve: if nothing is left after the fee reserve
    """
    if amount <= 0:
        raise InsufficientReserve(chain.id, symbol, required=balance - amount, available=balance)
    return amount


def to_units(raw: int, decimals: int) -> Decimal:
    return Decimal(raw) / (Decimal(10) ** decimals)


@dataclass
class TransferRecord:
    """One broadcast sweep transfer"""
    type: str  # 'native' or 'token'
    symbol: str
    amount: Decimal
    tx_hash: str
    chain_id: str
    destination: str

    def to_dict(self) -> Dict:
        return {
            'type': self.type,
            'symbol': self.symbol,
            'amount': str(self.amount),
            'tx_hash': self.tx_hash,
            'chain_id': self.chain_id,
            'destination': self.destination,
        }


@dataclass
class SweepOutcome:
    """Result of sweeping one chain"""
    family: ChainFamily
    chain_id: str
    status: str
    transfers: List[TransferRecord] = field(default_factory=list)
    error: Optional[Exception] = None
    note: Optional[str] = None

    @property
    def error_kind(self) -> Optional[str]:
        return classify_error(self.error) if self.error else None

    def __repr__(self):
        return (f"SweepOutcome({self.chain_id}: {self.status}, "
                f"{len(self.transfers)} transfers{', ' + self.error_kind if self.error else ''})")


@dataclass
class SweepReport:
    """All outcomes of one wallet sweep"""
    wallet_id: str
    outcomes: List[SweepOutcome] = field(default_factory=list)
    error: Optional[Exception] = None
    moved_value_usd: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> Optional[str]:
        return classify_error(self.error) if self.error else None

    @property
    def transfers(self) -> List[TransferRecord]:
        return [t for outcome in self.outcomes for t in outcome.transfers]

    @property
    def representative_tx_hash(self) -> Optional[str]:
        transfers = self.transfers
        return transfers[0].tx_hash if transfers else None

    @property
    def failed_chain(self) -> Optional[str]:
        for outcome in self.outcomes:
            if outcome.status == STATUS_FAILED:
                return outcome.chain_id
        return None


class SweepExecutor:
    """
    Per-family sweep strategies

    Features:
    - Fee reservation before native transfers
    - GasFeeInsufficient classification for token transfers
    - Abort remaining groups on first failure
    - Sweep ledger recording
    """

    def __init__(self, resolver, deriver, seed_provider: Callable[[str], str],
                 tron_native_reserve_sun: int = 30_000_000,
                 tron_fee_limit_sun: int = 30_000_000,
                 store=None):
        """
        Args:
            resolver: TieredEndpointResolver
            deriver: KeyDerivationEngine
            seed_provider: wallet_id -> seed phrase (e.g. SeedVault.load_seed)
            tron_native_reserve_sun: TRX kept back for fees (in sun)
            tron_fee_limit_sun: Fee ceiling for TRC-20 transfers (in sun)
            store: WalletStore for the sweep ledger (optional)
        """
        self.resolver = resolver
        self.deriver = deriver
        self.seed_provider = seed_provider
        self.tron_native_reserve_sun = tron_native_reserve_sun
        self.tron_fee_limit_sun = tron_fee_limit_sun
        self.store = store
        self._handlers = {
            ChainFamily.EVM: self._sweep_evm,
            ChainFamily.TRON: self._sweep_tron,
            ChainFamily.UTXO: self._sweep_utxo,
            ChainFamily.SOLANA: self._sweep_unsupported,
            ChainFamily.COSMOS: self._sweep_unsupported,
        }
        assert set(self._handlers) == set(ChainFamily), "sweep handler missing for a chain family"

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    @staticmethod
    def group_by_family(valued_balances: Sequence[ValuedBalanceItem]) -> "OrderedDict[ChainFamily, OrderedDict[str, List[ValuedBalanceItem]]]":
        """Group items by family (registry order) then by chain (first-seen order)"""
        grouped: Dict[ChainFamily, "OrderedDict[str, List[ValuedBalanceItem]]"] = {}
        for valued in valued_balances:
            family = get_chain(valued.chain_id).family
            grouped.setdefault(family, OrderedDict()).setdefault(valued.chain_id, []).append(valued)
        return OrderedDict((family, grouped[family]) for family in FAMILY_ORDER if family in grouped)

    async def sweep(self, wallet, valued_balances: Sequence[ValuedBalanceItem], config) -> SweepReport:
        """
        Sweep a wallet's valued balances to the configured destinations

        Args:
            wallet: Wallet being swept
            valued_balances: Items that contributed to the threshold breach
            config: MonitorConfig snapshot for this cycle

        Returns:
            SweepReport (never raises)
        """
        report = SweepReport(wallet_id=wallet.id)
        groups = self.group_by_family(valued_balances)
        if not groups:
            logger.info(f"Nothing to sweep for wallet {wallet.id}")
            return report

        logger.info(f"🔄 Starting sweep for wallet {wallet.name} ({wallet.id})")

        try:
            phrase = self.seed_provider(wallet.id)
        except Exception as e:
            logger.error(f"❌ Cannot load seed for wallet {wallet.id}: {e}")
            report.error = e
            return report

        try:
            for family, chains in groups.items():
                for chain_id, items in chains.items():
                    chain = get_chain(chain_id)
                    try:
                        outcome = await self._handlers[family](wallet, chain, items, config, phrase)
                    except Exception as e:
                        outcome = SweepOutcome(family, chain.id, STATUS_FAILED, error=e)
                        outcome.transfers = getattr(e, 'completed_transfers', [])
                        self._record_failure(wallet.id, chain.id, e)
                        report.outcomes.append(outcome)
                        report.error = e
                        self._log_failure(wallet, chain, e)
                        return self._finish(report, valued_balances)

                    report.outcomes.append(outcome)
        finally:
            del phrase

        return self._finish(report, valued_balances)

    def _finish(self, report: SweepReport, valued_balances: Sequence[ValuedBalanceItem]) -> SweepReport:
        moved = {(t.chain_id, t.symbol) for t in report.transfers}
        report.moved_value_usd = sum(
            v.value_usd for v in valued_balances if (v.chain_id, v.symbol) in moved
        )
        if report.succeeded:
            logger.info(
                f"✅ Sweep finished for {report.wallet_id}: {len(report.transfers)} transfer(s), "
                f"${report.moved_value_usd:.2f} moved"
            )
        return report

    def _log_failure(self, wallet, chain: ChainDescriptor, error: Exception) -> None:
        kind = classify_error(error)
        if isinstance(error, GasFeeInsufficient):
            logger.warning(f"⚠ Sweep halted for {wallet.id} on {chain.id} ({kind}): {error}")
        else:
            logger.error(f"❌ Sweep failed for {wallet.id} on {chain.id} ({kind}): {error}")
        logger.warning(f"Remaining chain groups skipped for wallet {wallet.id} this cycle")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _destination(self, family: ChainFamily, chain: ChainDescriptor, config) -> Optional[str]:
        destination = config.destination_for(family)
        if destination and not is_valid_address(chain, destination):
            raise ValidationError(f"Invalid {family.value} destination address for {chain.id}: {destination}")
        return destination

    def _derive(self, phrase: str, chain: ChainDescriptor) -> DerivedKey:
        return self.deriver.derive(phrase, chain)

    def _record_transfer(self, wallet_id: str, transfer: TransferRecord) -> None:
        if self.store is None:
            return
        self.store.record_sweep_transfer(
            wallet_id, transfer.chain_id, 'success',
            transfer_type=transfer.type, symbol=transfer.symbol, amount=str(transfer.amount),
            tx_hash=transfer.tx_hash, destination=transfer.destination,
        )

    def _record_failure(self, wallet_id: str, chain_id: str, error: Exception) -> None:
        if self.store is None:
            return
        self.store.record_sweep_transfer(
            wallet_id, chain_id, 'failed',
            symbol=getattr(error, 'symbol', None),
            error_kind=classify_error(error), error_message=str(error),
        )

    async def _client_call(self, chain: ChainDescriptor, description: str, call, transfers: List[TransferRecord]):
        """Await a client call, invalidating the pooled endpoint and wrapping errors on failure"""
        try:
            return await call
        except Exception as e:
            await self.resolver.invalidate(chain.id)
            error = SweepError(chain.id, f"Failed to {description} on {chain.id}: {e}")
            raise self._attach(error, transfers) from e

    def _transfer_done(self, wallet, transfers: List[TransferRecord], transfer: TransferRecord) -> None:
        transfers.append(transfer)
        self._record_transfer(wallet.id, transfer)
        logger.info(
            f"✓ Sent {transfer.amount} {transfer.symbol} on {transfer.chain_id} "
            f"to {transfer.destination} (tx: {transfer.tx_hash})"
        )

    @staticmethod
    def _attach(error: Exception, transfers: List[TransferRecord]) -> Exception:
        error.completed_transfers = list(transfers)
        return error

    # ------------------------------------------------------------------
    # Family strategies
    # ------------------------------------------------------------------

    async def _sweep_evm(self, wallet, chain: ChainDescriptor, items: List[ValuedBalanceItem],
                         config, phrase: str) -> SweepOutcome:
        destination = self._destination(ChainFamily.EVM, chain, config)
        if not destination:
            logger.warning(f"⚠ No EVM destination configured, skipping {chain.id}")
            return SweepOutcome(ChainFamily.EVM, chain.id, STATUS_SKIPPED, note="no destination configured")

        key = self._derive(phrase, chain)
        client = await self.resolver.resolve(chain.id)
        transfers: List[TransferRecord] = []
        # Native balance left after this sweep's own sends; the latest block may not show them yet
        expected_native: Optional[int] = None

        native = next((v for v in items if not v.is_token and v.item.raw_balance > 0), None)
        if native:
            balance = await self._client_call(chain, "read native balance", client.get_native_balance(key.address), transfers)
            gas_price = await self._client_call(chain, "read gas price", client.gas_price(), transfers)
            try:
                amount = ensure_transferable(
                    compute_evm_sweep_amount(balance, gas_price), chain, chain.symbol, balance
                )
            except InsufficientReserve as e:
                logger.warning(f"⚠ Insufficient {chain.symbol} on {chain.id} to send (need gas reserve): {e}")
            else:
                tx_hash = await self._client_call(
                    chain, f"send {chain.symbol}",
                    client.send_native(key.private_key, destination, amount, gas_price), transfers,
                )
                expected_native = balance - amount - NATIVE_TRANSFER_GAS * gas_price
                self._transfer_done(wallet, transfers, TransferRecord(
                    'native', chain.symbol, to_units(amount, chain.decimals), tx_hash, chain.id, destination,
                ))

        for valued in items:
            if not valued.is_token:
                continue
            token = find_token(chain, valued.item.token_contract or '')
            if token is None:
                logger.warning(f"⚠ Untracked token {valued.symbol} on {chain.id}, skipping")
                continue

            raw, decimals = await self._client_call(
                chain, f"read {token.symbol} balance", client.get_token_balance(key.address, token), transfers,
            )
            if raw <= 0:
                logger.info(f"No {token.symbol} left on {chain.id}, skipping")
                continue

            native_balance = await self._client_call(chain, "read native balance", client.get_native_balance(key.address), transfers)
            gas_price = await self._client_call(chain, "read gas price", client.gas_price(), transfers)
            try:
                gas_limit = await client.estimate_token_transfer_gas(token, key.address, destination, raw)
            except Exception as e:
                logger.debug(f"Gas estimation failed for {token.symbol} on {chain.id}, using {TOKEN_TRANSFER_GAS}: {e}")
                gas_limit = TOKEN_TRANSFER_GAS

            fee = gas_limit * gas_price
            available = native_balance if expected_native is None else min(native_balance, expected_native)
            if available < fee:
                raise self._attach(GasFeeInsufficient(chain.id, token.symbol, fee, available), transfers)

            tx_hash = await self._client_call(
                chain, f"send {token.symbol}",
                client.send_token(key.private_key, token, destination, raw, gas_price, gas_limit), transfers,
            )
            expected_native = available - fee
            self._transfer_done(wallet, transfers, TransferRecord(
                'token', token.symbol, to_units(raw, decimals), tx_hash, chain.id, destination,
            ))

        return SweepOutcome(ChainFamily.EVM, chain.id, STATUS_SUCCESS, transfers)

    async def _sweep_tron(self, wallet, chain: ChainDescriptor, items: List[ValuedBalanceItem],
                          config, phrase: str) -> SweepOutcome:
        destination = self._destination(ChainFamily.TRON, chain, config)
        if not destination:
            logger.warning(f"⚠ No Tron destination configured, skipping {chain.id}")
            return SweepOutcome(ChainFamily.TRON, chain.id, STATUS_SKIPPED, note="no destination configured")

        key = self._derive(phrase, chain)
        client = await self.resolver.resolve(chain.id)
        transfers: List[TransferRecord] = []
        reserve = self.tron_native_reserve_sun

        native = next((v for v in items if not v.is_token and v.item.raw_balance > 0), None)
        if native:
            balance = await self._client_call(chain, "read TRX balance", client.get_native_balance(key.address), transfers)
            try:
                amount = ensure_transferable(balance - reserve, chain, chain.symbol, balance)
            except InsufficientReserve as e:
                logger.warning(f"⚠ Insufficient TRX to send after {to_units(reserve, 6)} TRX reserve: {e}")
            else:
                tx_hash = await self._client_call(
                    chain, "send TRX", client.send_native(key.private_key, destination, amount), transfers,
                )
                self._transfer_done(wallet, transfers, TransferRecord(
                    'native', chain.symbol, to_units(amount, chain.decimals), tx_hash, chain.id, destination,
                ))

        for valued in items:
            if not valued.is_token:
                continue
            token = find_token(chain, valued.item.token_contract or '')
            if token is None:
                logger.warning(f"⚠ Untracked token {valued.symbol} on tron, skipping")
                continue

            raw, decimals = await self._client_call(
                chain, f"read {token.symbol} balance", client.get_token_balance(key.address, token), transfers,
            )
            if raw <= 0:
                logger.info(f"No {token.symbol} left on tron, skipping")
                continue

            native_balance = await self._client_call(chain, "read TRX balance", client.get_native_balance(key.address), transfers)
            if native_balance < reserve:
                raise self._attach(GasFeeInsufficient(chain.id, token.symbol, reserve, native_balance), transfers)

            tx_hash = await self._client_call(
                chain, f"send {token.symbol}",
                client.send_token(key.private_key, token, destination, raw, self.tron_fee_limit_sun), transfers,
            )
            self._transfer_done(wallet, transfers, TransferRecord(
                'token', token.symbol, to_units(raw, decimals), tx_hash, chain.id, destination,
            ))

        return SweepOutcome(ChainFamily.TRON, chain.id, STATUS_SUCCESS, transfers)

    async def _sweep_utxo(self, wallet, chain: ChainDescriptor, items: List[ValuedBalanceItem],
                          config, phrase: str) -> SweepOutcome:
        destination = config.destination_for(ChainFamily.UTXO)
        if destination and not is_valid_address(chain, destination):
            logger.info(f"No valid destination for {chain.id} ({destination} belongs to another chain)")
            destination = None
        for valued in items:
            logger.info(
                f"Would send {valued.item.amount} {valued.symbol} from {valued.item.source_address} "
                f"to {destination or '(no destination configured)'}"
            )
        error = SweepNotImplemented(chain.id, f"{chain.symbol} sweep is not implemented; transfer logged only")
        logger.warning(f"⚠ {error}")
        return SweepOutcome(ChainFamily.UTXO, chain.id, STATUS_NOT_EXECUTED, error=error,
                            note="UTXO sweep not implemented")

    async def _sweep_unsupported(self, wallet, chain: ChainDescriptor, items: List[ValuedBalanceItem],
                                 config, phrase: str) -> SweepOutcome:
        logger.warning(f"⚠ Chain {chain.id} not supported for auto-transfer, skipping")
        return SweepOutcome(chain.family, chain.id, STATUS_SKIPPED, note="auto-transfer not supported")
