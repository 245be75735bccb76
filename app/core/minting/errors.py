"""Chain submission error taxonomy.

Every failure surfaced by the chain client is a ``ChainError`` carrying a stable
``code`` and a ``retryable`` flag; the mint orchestrator decides whether to back
off and retry purely from that flag.
"""
from __future__ import annotations

from web3.exceptions import ContractLogicError


class ChainError(Exception):
    code: str = "TRANSACTION_ERROR"
    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool | None = None,
        tx_hash: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        # Set once the transaction has been broadcast; retries must poll this hash
        # instead of sending a new transaction.
        self.tx_hash = tx_hash
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code!r}, retryable={self.retryable!r}, "
            f"tx_hash={self.tx_hash!r}, message={self.message!r})"
        )


class GasEstimationError(ChainError):
    code = "GAS_ERROR"
    retryable = True


class NonceError(ChainError):
    code = "NONCE_ERROR"
    retryable = True


class ChainTransactionError(ChainError):
    code = "TRANSACTION_ERROR"
    retryable = True


class NoReceiptError(ChainError):
    code = "NO_RECEIPT"
    retryable = True


class ContractRevertError(ChainError):
    code = "CONTRACT_ERROR"
    retryable = False


class InsufficientFundsError(ChainError):
    code = "INSUFFICIENT_FUNDS"
    retryable = False


class MissingWalletAddressError(ChainError):
    code = "MISSING_WALLET_ADDRESS"
    retryable = False


class ChainNotConfiguredError(ChainError):
    code = "SERVICE_NOT_CONFIGURED"
    retryable = False


_NONCE_MARKERS = (
    "nonce too low",
    "nonce expired",
    "nonce_expired",
    "nonce_too_low",
    "replacement transaction underpriced",
    "already known",
)


def _error_text(exc: BaseException) -> str:
    # web3 RPC errors usually carry a dict payload: {"code": -32000, "message": "..."}
    parts: list[str] = [str(exc)]
    for arg in getattr(exc, "args", ()) or ():
        if isinstance(arg, dict):
            msg = arg.get("message")
            if msg:
                parts.append(str(msg))
    return " ".join(parts).lower()


def classify_chain_exception(exc: BaseException, *, stage: str = "broadcast") -> ChainError:
    """Map a raw provider/web3 exception onto the chain error taxonomy.

    ``stage`` is the submission step that failed; failures during ``estimate_gas``
    that are not reverts or funding problems count as gas estimation errors.
    """
    if isinstance(exc, ChainError):
        return exc

    text = _error_text(exc)

    if isinstance(exc, ContractLogicError) or "revert" in text:
        return ContractRevertError(f"Contract revert: {exc}")
    if "insufficient funds" in text:
        return InsufficientFundsError("Insufficient funds for gas")
    if any(marker in text for marker in _NONCE_MARKERS):
        return NonceError(f"Nonce error: {exc}")
    if stage == "estimate_gas":
        return GasEstimationError("Gas estimation failed. Transaction may revert.")
    return ChainTransactionError(f"Transaction failed: {exc}")
