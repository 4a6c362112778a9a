"""
Error taxonomy for the custody sweep engine.

Every error carries a ``kind`` string so operators can tell
"top up the native fee balance" apart from "investigate immediately"
in logs and notifications.
"""

from typing import List, Optional


class CustodySweepError(Exception):
    """Base class for all custody sweep errors"""
    kind = "unexpected_error"


class ValidationError(CustodySweepError):
    """Bad seed phrase, address or chain identifier"""
    kind = "validation_error"


class DerivationError(CustodySweepError):
    """Key derivation failed for a single chain"""
    kind = "derivation_error"

    def __init__(self, chain_id: str, message: str):
        self.chain_id = chain_id
        super().__init__(f"Derivation failed for {chain_id}: {message}")


class ChainRequestError(CustodySweepError):
    """A chain endpoint answered with an HTTP or JSON-RPC error"""
    kind = "chain_request_error"

    def __init__(self, endpoint: str, message: str):
        self.endpoint = endpoint
        super().__init__(f"{endpoint}: {message}")


class AllEndpointsFailed(CustodySweepError):
    """Every endpoint tier was exhausted"""
    kind = "all_endpoints_failed"

    def __init__(self, label: str, attempts: List):
        self.label = label
        self.attempts = list(attempts)
        details = "; ".join(
            f"tier {a.tier} {a.endpoint}: {a.error}" for a in self.attempts
        )
        last_error = self.attempts[-1].error if self.attempts else "no candidates"
        super().__init__(
            f"All RPC providers failed for {label}. Last error: {last_error}"
            + (f" ({details})" if details else "")
        )


class PartialFetchError(CustodySweepError):
    """One balance item failed to fetch (never propagated out of aggregation)"""
    kind = "partial_fetch_error"

    def __init__(self, chain_id: str, address: str, symbol: str, cause: Exception):
        self.chain_id = chain_id
        self.address = address
        self.symbol = symbol
        self.cause = cause
        super().__init__(f"{symbol} on {chain_id} ({address}): {cause}")


class SweepError(CustodySweepError):
    """A sweep transfer for one chain group failed"""
    kind = "sweep_error"

    def __init__(self, chain_id: str, message: str):
        self.chain_id = chain_id
        super().__init__(message)


class InsufficientReserve(SweepError):
    """Transferable amount is not positive once fees are reserved"""
    kind = "insufficient_reserve"

    def __init__(self, chain_id: str, symbol: str, required: int, available: int,
                 message: Optional[str] = None):
        self.symbol = symbol
        self.required = required
        self.available = available
        super().__init__(
            chain_id,
            message or (
                f"Insufficient {symbol} on {chain_id}: "
                f"need {required} (gas reserve), have {available}"
            ),
        )

    @property
    def shortfall(self) -> int:
        return max(self.required - self.available, 0)


class GasFeeInsufficient(InsufficientReserve):
    """Native fee balance cannot cover a token transfer"""
    kind = "gas_fee_insufficient"

    def __init__(self, chain_id: str, symbol: str, required: int, available: int):
        super().__init__(
            chain_id, symbol, required, available,
            message=(
                f"GAS_FEE_INSUFFICIENT: {symbol} transfer on {chain_id} needs "
                f"{required} native units for fees, wallet holds {available} "
                f"(short by {max(required - available, 0)})"
            ),
        )


class SweepNotImplemented(SweepError):
    """Sweep strategy is a placeholder for this chain family"""
    kind = "unimplemented"


def classify_error(exc: BaseException) -> str:
    """Map an exception onto its taxonomy kind"""
    if isinstance(exc, CustodySweepError):
        return exc.kind
    return CustodySweepError.kind
