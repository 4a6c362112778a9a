"""
Tests for fee-reserving sweep strategies.
"""
from decimal import Decimal
from types import MappingProxyType

import pytest

from custody_sweep.balance_aggregator import BalanceItem, ValuedBalanceItem
from custody_sweep.chain_registry import USDT_ETHEREUM, USDT_TRON, ChainFamily, get_chain
from custody_sweep.errors import GasFeeInsufficient, InsufficientReserve, SweepError, ValidationError
from custody_sweep.key_derivation import KeyDerivationEngine
from custody_sweep.monitor_config import MonitorConfig
from custody_sweep.sweep_executor import (
    STATUS_FAILED,
    STATUS_NOT_EXECUTED,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
    SweepExecutor,
    compute_evm_reserve,
    compute_evm_sweep_amount,
    ensure_transferable,
)
from custody_sweep.wallet_store import Wallet
from tests.conftest import ETHER, EVM_DESTINATION, GWEI, TEST_MNEMONIC, FakeChainClient, FakeResolver

TRON_DESTINATION = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"
BTC_DESTINATION = "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"

WALLET = Wallet("w1", "Treasury", None)


def native_item(chain_id: str, raw: int, value_usd: float = 100.0) -> ValuedBalanceItem:
    chain = get_chain(chain_id)
    item = BalanceItem(chain.id, chain.symbol, raw, chain.decimals, False, "source")
    return ValuedBalanceItem(item, 1.0, value_usd)


def token_item(chain_id: str, token, raw: int, value_usd: float = 50.0) -> ValuedBalanceItem:
    item = BalanceItem(chain_id, token.symbol, raw, token.decimals, True, "source", token.contract)
    return ValuedBalanceItem(item, 1.0, value_usd)


def make_config(**destinations) -> MonitorConfig:
    families = {
        'evm': ChainFamily.EVM,
        'tron': ChainFamily.TRON,
        'utxo': ChainFamily.UTXO,
    }
    return MonitorConfig(
        threshold_usd=10.0,
        destinations=MappingProxyType({families[k]: v for k, v in destinations.items()}),
        poll_interval_ms=60_000,
    )


def make_executor(resolver, store=None, seed_provider=None) -> SweepExecutor:
    return SweepExecutor(
        resolver,
        KeyDerivationEngine(),
        seed_provider or (lambda wallet_id: TEST_MNEMONIC),
        tron_native_reserve_sun=30_000_000,
        tron_fee_limit_sun=30_000_000,
        store=store,
    )


class TestFeeReserve:
    """Test the native fee reserve arithmetic."""

    @pytest.mark.parametrize("gas_price", [1, 5 * GWEI, 20 * GWEI, 300 * GWEI])
    def test_sweep_plus_reserve_equals_balance(self, gas_price):
        """Swept amount and reserve always add back up to the balance."""
        balance = 3 * ETHER
        amount = compute_evm_sweep_amount(balance, gas_price)
        assert amount + (21000 + 100000) * gas_price == balance
        assert compute_evm_reserve(gas_price) == 121000 * gas_price

    def test_balance_below_reserve_is_not_transferable(self):
        """Nothing can be sent when the balance is under the reserve."""
        gas_price = 20 * GWEI
        balance = compute_evm_reserve(gas_price) - 1
        with pytest.raises(InsufficientReserve) as exc_info:
            ensure_transferable(compute_evm_sweep_amount(balance, gas_price),
                                get_chain("ethereum"), "ETH", balance)
        assert exc_info.value.shortfall == 1

    def test_gas_fee_insufficient_is_an_insufficient_reserve(self):
        """The token gas error is classified under the reserve error."""
        error = GasFeeInsufficient("ethereum", "USDT", 100, 40)
        assert isinstance(error, InsufficientReserve)
        assert str(error).startswith("GAS_FEE_INSUFFICIENT")
        assert error.kind == "gas_fee_insufficient"


class TestEvmSweep:
    """Test native-then-token EVM sweeps."""

    @pytest.mark.asyncio
    async def test_native_then_token(self):
        """12 ETH and 50 USDT are both swept, native first."""
        client = FakeChainClient("ethereum", native=12 * ETHER, tokens={USDT_ETHEREUM.contract: 50_000_000})
        executor = make_executor(FakeResolver({"ethereum": client}))
        items = [native_item("ethereum", 12 * ETHER, 24000.0), token_item("ethereum", USDT_ETHEREUM, 50_000_000)]

        report = await executor.sweep(WALLET, items, make_config(evm=EVM_DESTINATION))

        gas_price = 20 * GWEI
        expected_native = 12 * ETHER - 121000 * gas_price
        assert client.sent == [
            ("native", EVM_DESTINATION, expected_native, gas_price),
            ("token", EVM_DESTINATION, 50_000_000, "USDT", gas_price, 65000),
        ]
        assert report.succeeded
        assert [o.status for o in report.outcomes] == [STATUS_SUCCESS]
        assert [t.type for t in report.transfers] == ["native", "token"]
        assert report.transfers[1].amount == Decimal(50)
        assert report.representative_tx_hash == "0xnative1"
        assert report.moved_value_usd == pytest.approx(24050.0)

    @pytest.mark.asyncio
    async def test_balance_under_reserve_sends_no_native(self):
        """A native balance below the reserve is left in place."""
        gas_price = 20 * GWEI
        balance = 121000 * gas_price - 1
        client = FakeChainClient("ethereum", native=balance, gas_price=gas_price)
        executor = make_executor(FakeResolver({"ethereum": client}))

        report = await executor.sweep(WALLET, [native_item("ethereum", balance)], make_config(evm=EVM_DESTINATION))

        assert client.sent == []
        assert report.succeeded
        assert report.outcomes[0].status == STATUS_SUCCESS
        assert report.transfers == []

    @pytest.mark.asyncio
    async def test_token_without_gas_is_gas_fee_insufficient(self, store):
        """A token with no native balance for fees fails with GAS_FEE_INSUFFICIENT."""
        store.create_wallet("w1", "Treasury")
        client = FakeChainClient("ethereum", native=0, tokens={USDT_ETHEREUM.contract: 50_000_000})
        executor = make_executor(FakeResolver({"ethereum": client}), store=store)

        report = await executor.sweep(
            WALLET, [token_item("ethereum", USDT_ETHEREUM, 50_000_000)], make_config(evm=EVM_DESTINATION)
        )

        assert not report.succeeded
        assert report.error_kind == "gas_fee_insufficient"
        assert isinstance(report.error, GasFeeInsufficient)
        assert report.failed_chain == "ethereum"
        assert client.sent == []
        history = store.get_sweep_history("w1")
        assert history[0]["status"] == "failed"
        assert history[0]["error_kind"] == "gas_fee_insufficient"

    @pytest.mark.asyncio
    async def test_expensive_token_after_native_keeps_completed_transfer(self):
        """A token needing more gas than the reserve fails but keeps the native transfer."""
        client = FakeChainClient("ethereum", native=2 * ETHER, tokens={USDT_ETHEREUM.contract: 50_000_000},
                                 gas_estimate=200_000)
        executor = make_executor(FakeResolver({"ethereum": client}))
        items = [native_item("ethereum", 2 * ETHER), token_item("ethereum", USDT_ETHEREUM, 50_000_000)]

        report = await executor.sweep(WALLET, items, make_config(evm=EVM_DESTINATION))

        assert report.error_kind == "gas_fee_insufficient"
        assert report.outcomes[0].status == STATUS_FAILED
        assert [t.type for t in report.outcomes[0].transfers] == ["native"]
        assert report.representative_tx_hash == "0xnative1"

    @pytest.mark.asyncio
    async def test_gas_check_counts_unconfirmed_native_send(self):
        """The token gas check uses the balance left after the native send, not the stale latest block."""

        class LaggingClient(FakeChainClient):
            async def send_native(self, private_key, to_address, amount, *args):
                self.sent.append(("native", to_address, amount) + tuple(args))
                return "0xnative1"

        gas_price = 20 * GWEI
        client = LaggingClient("ethereum", native=2 * ETHER, tokens={USDT_ETHEREUM.contract: 50_000_000},
                               gas_estimate=200_000)
        executor = make_executor(FakeResolver({"ethereum": client}))
        items = [native_item("ethereum", 2 * ETHER), token_item("ethereum", USDT_ETHEREUM, 50_000_000)]

        report = await executor.sweep(WALLET, items, make_config(evm=EVM_DESTINATION))

        assert report.error_kind == "gas_fee_insufficient"
        assert report.error.required == 200_000 * gas_price
        assert report.error.available == 100_000 * gas_price
        assert [s[0] for s in client.sent] == ["native"]

    @pytest.mark.asyncio
    async def test_gas_estimate_failure_uses_default_limit(self):
        """A failing gas estimate falls back to the 100000 token gas limit."""
        client = FakeChainClient("ethereum", native=ETHER, tokens={USDT_ETHEREUM.contract: 5_000_000},
                                 gas_estimate=None)
        executor = make_executor(FakeResolver({"ethereum": client}))

        await executor.sweep(WALLET, [token_item("ethereum", USDT_ETHEREUM, 5_000_000)],
                             make_config(evm=EVM_DESTINATION))

        assert client.sent == [("token", EVM_DESTINATION, 5_000_000, "USDT", 20 * GWEI, 100000)]

    @pytest.mark.asyncio
    async def test_broadcast_failure_invalidates_endpoint(self):
        """A failed send is a sweep error and drops the pooled endpoint."""
        resolver = FakeResolver({"ethereum": FakeChainClient("ethereum", native=ETHER, fail_send=True)})
        executor = make_executor(resolver)

        report = await executor.sweep(WALLET, [native_item("ethereum", ETHER)], make_config(evm=EVM_DESTINATION))

        assert isinstance(report.error, SweepError)
        assert report.error_kind == "sweep_error"
        assert isinstance(report.error.__cause__, ConnectionError)
        assert resolver.invalidated == ["ethereum"]


class TestGroupOrdering:
    """Test family grouping and abort-on-failure."""

    @pytest.mark.asyncio
    async def test_first_failure_aborts_remaining_groups(self):
        """A failing EVM group stops the Tron group from running."""
        eth = FakeChainClient("ethereum", native=ETHER, fail_send=True)
        tron = FakeChainClient("tron", native=100_000_000)
        executor = make_executor(FakeResolver({"ethereum": eth, "tron": tron}))
        items = [native_item("tron", 100_000_000), native_item("ethereum", ETHER)]

        report = await executor.sweep(
            WALLET, items, make_config(evm=EVM_DESTINATION, tron=TRON_DESTINATION)
        )

        assert [o.chain_id for o in report.outcomes] == ["ethereum"]
        assert tron.sent == []

    def test_group_by_family_order(self):
        """Groups follow family order, chains keep first-seen order."""
        items = [
            native_item("tron", 1),
            native_item("polygon", 1),
            native_item("bitcoin", 1),
            native_item("ethereum", 1),
            token_item("ethereum", USDT_ETHEREUM, 1),
        ]

        groups = SweepExecutor.group_by_family(items)

        assert list(groups) == [ChainFamily.EVM, ChainFamily.TRON, ChainFamily.UTXO]
        assert list(groups[ChainFamily.EVM]) == ["polygon", "ethereum"]
        assert len(groups[ChainFamily.EVM]["ethereum"]) == 2

    @pytest.mark.asyncio
    async def test_utxo_is_not_executed_and_does_not_abort(self):
        """UTXO groups report not_executed and later groups still run."""
        executor = make_executor(FakeResolver())
        items = [native_item("bitcoin", 150_000), native_item("solana", 10 ** 9), native_item("cosmos", 10 ** 6)]

        report = await executor.sweep(WALLET, items, make_config(utxo=BTC_DESTINATION))

        assert [(o.chain_id, o.status) for o in report.outcomes] == [
            ("bitcoin", STATUS_NOT_EXECUTED),
            ("solana", STATUS_SKIPPED),
            ("cosmos", STATUS_SKIPPED),
        ]
        assert report.outcomes[0].error_kind == "unimplemented"
        assert report.succeeded
        assert report.moved_value_usd == 0

    @pytest.mark.asyncio
    async def test_bitcoin_destination_does_not_fail_litecoin(self):
        """A UTXO destination for another chain only drops the would-send target."""
        client = FakeChainClient("ethereum", native=2 * ETHER)
        executor = make_executor(FakeResolver({"ethereum": client}))
        items = [native_item("ethereum", 2 * ETHER), native_item("litecoin", 10 ** 8), native_item("dogecoin", 10 ** 8)]

        report = await executor.sweep(WALLET, items, make_config(evm=EVM_DESTINATION, utxo=BTC_DESTINATION))

        assert [(o.chain_id, o.status) for o in report.outcomes] == [
            ("ethereum", STATUS_SUCCESS),
            ("litecoin", STATUS_NOT_EXECUTED),
            ("dogecoin", STATUS_NOT_EXECUTED),
        ]
        assert report.succeeded
        assert report.error is None
        assert len(client.sent) == 1

    @pytest.mark.asyncio
    async def test_missing_destination_skips_without_rpc(self):
        """Without a destination no endpoint is resolved and nothing moves."""
        executor = make_executor(FakeResolver())

        report = await executor.sweep(WALLET, [native_item("ethereum", ETHER)], make_config())

        assert report.succeeded
        assert report.outcomes[0].status == STATUS_SKIPPED

    @pytest.mark.asyncio
    async def test_invalid_destination_is_a_validation_failure(self):
        """A malformed destination fails the group as a validation error."""
        executor = make_executor(FakeResolver())

        report = await executor.sweep(WALLET, [native_item("ethereum", ETHER)], make_config(evm="0x1234"))

        assert isinstance(report.error, ValidationError)
        assert report.outcomes[0].status == STATUS_FAILED

    @pytest.mark.asyncio
    async def test_seed_failure_reports_without_outcomes(self):
        """If the seed cannot be loaded nothing is attempted."""
        def missing_seed(wallet_id):
            raise ValidationError(f"No seed phrase stored for wallet {wallet_id}")

        executor = make_executor(FakeResolver(), seed_provider=missing_seed)

        report = await executor.sweep(WALLET, [native_item("ethereum", ETHER)], make_config(evm=EVM_DESTINATION))

        assert report.outcomes == []
        assert report.error_kind == "validation_error"

    @pytest.mark.asyncio
    async def test_nothing_to_sweep(self):
        """An empty item list yields an empty successful report."""
        report = await make_executor(FakeResolver()).sweep(WALLET, [], make_config())
        assert report.succeeded
        assert report.outcomes == []


class TestTronSweep:
    """Test the fixed-reserve Tron strategy."""

    @pytest.mark.asyncio
    async def test_native_keeps_reserve_then_token(self, store):
        """100 TRX leaves 30 TRX behind, then USDT goes under the fee limit."""
        store.create_wallet("w1", "Treasury")
        client = FakeChainClient("tron", native=100_000_000, tokens={USDT_TRON.contract: 10_000_000})
        executor = make_executor(FakeResolver({"tron": client}), store=store)
        items = [native_item("tron", 100_000_000), token_item("tron", USDT_TRON, 10_000_000)]

        report = await executor.sweep(WALLET, items, make_config(tron=TRON_DESTINATION))

        assert client.sent == [
            ("native", TRON_DESTINATION, 70_000_000),
            ("token", TRON_DESTINATION, 10_000_000, "USDT", 30_000_000),
        ]
        assert report.succeeded
        assert [t.amount for t in report.transfers] == [Decimal(70), Decimal(10)]
        assert [row["status"] for row in store.get_sweep_history("w1")] == ["success", "success"]

    @pytest.mark.asyncio
    async def test_token_blocked_below_reserve(self):
        """Below the TRX reserve a token transfer is GAS_FEE_INSUFFICIENT."""
        client = FakeChainClient("tron", native=20_000_000, tokens={USDT_TRON.contract: 10_000_000})
        executor = make_executor(FakeResolver({"tron": client}))
        items = [native_item("tron", 20_000_000), token_item("tron", USDT_TRON, 10_000_000)]

        report = await executor.sweep(WALLET, items, make_config(tron=TRON_DESTINATION))

        assert client.sent == []
        assert report.error_kind == "gas_fee_insufficient"
