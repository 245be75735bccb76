from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TransactionNotFound

from app.core.minting.errors import (
    ChainError,
    ChainNotConfiguredError,
    ChainTransactionError,
    ContractRevertError,
    MissingWalletAddressError,
    NoReceiptError,
    classify_chain_exception,
)
from app.utils.observability import log_duration

logger = logging.getLogger(__name__)


# Subset of the reward token contract used by the backend.
MINT_CONTRACT_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "mintBatch",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "collector", "type": "address"},
            {"name": "recycler", "type": "address"},
            {"name": "weightAmount", "type": "uint256"},
            {"name": "ipfsHash", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "totalMinted",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "BatchMinted",
        "anonymous": False,
        "inputs": [
            {"name": "batchId", "type": "uint256", "indexed": True},
            {"name": "collector", "type": "address", "indexed": True},
            {"name": "recycler", "type": "address", "indexed": True},
            {"name": "weightAmount", "type": "uint256", "indexed": False},
            {"name": "ipfsHash", "type": "string", "indexed": False},
        ],
    },
]


@dataclass(frozen=True)
class ChainConfig:
    rpc_url: str
    private_key: str
    contract_address: str
    confirmations: int = 2
    gas_buffer_percent: int = 20
    receipt_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 2.0
    expected_chain_id: int = 0

    @classmethod
    def from_settings(cls, settings: Any) -> "ChainConfig":
        return cls(
            rpc_url=(settings.CHAIN_RPC_URL or "").strip(),
            private_key=(settings.CHAIN_PRIVATE_KEY or "").strip(),
            contract_address=(settings.CHAIN_CONTRACT_ADDRESS or "").strip(),
            confirmations=int(settings.MINT_CONFIRMATIONS),
            gas_buffer_percent=int(settings.MINT_GAS_BUFFER_PERCENT),
            receipt_timeout_seconds=float(settings.MINT_RECEIPT_TIMEOUT_SECONDS),
            poll_interval_seconds=float(settings.MINT_CONFIRMATION_POLL_SECONDS),
            expected_chain_id=int(settings.CHAIN_EXPECTED_CHAIN_ID or 0),
        )


@dataclass(frozen=True)
class ChainClientStatus:
    configured: bool
    reason: str | None = None
    signer_address: str | None = None
    contract_address: str | None = None


@dataclass(frozen=True)
class MintRequest:
    batch_id: str
    collector_address: str
    recycler_address: str
    weight_grams: int
    ipfs_hash: str


@dataclass(frozen=True)
class ChainSubmission:
    transaction_hash: str
    block_number: int
    gas_used: int


@dataclass(frozen=True)
class ReceiptStatus:
    found: bool
    succeeded: bool = False
    block_number: int | None = None
    gas_used: int | None = None


def gas_limit_with_buffer(estimate: int, buffer_percent: int) -> int:
    return int(estimate) * (100 + int(buffer_percent)) // 100


class ChainClient:
    """Signs and submits reward mint transactions to an EVM chain.

    Construction never raises: a missing or malformed configuration yields a client
    whose ``status.configured`` is False and whose ``status.reason`` says why.
    """

    def __init__(self, config: ChainConfig, *, w3: AsyncWeb3 | None = None):
        self.config = config
        self._w3: AsyncWeb3 | None = None
        self._account = None
        self._contract = None
        self.status = self._initialize(config, w3)
        if self.status.configured:
            logger.info(
                "chain.client_configured signer=%s contract=%s",
                self.status.signer_address,
                self.status.contract_address,
            )
        else:
            logger.warning("chain.client_not_configured reason=%s", self.status.reason)

    @classmethod
    def from_settings(cls, settings: Any) -> "ChainClient":
        return cls(ChainConfig.from_settings(settings))

    def _initialize(self, config: ChainConfig, w3: AsyncWeb3 | None) -> ChainClientStatus:
        missing = [
            name
            for name, value in (
                ("CHAIN_RPC_URL", config.rpc_url),
                ("CHAIN_PRIVATE_KEY", config.private_key),
                ("CHAIN_CONTRACT_ADDRESS", config.contract_address),
            )
            if not value
        ]
        if missing:
            return ChainClientStatus(configured=False, reason=f"missing {', '.join(missing)}")

        if not AsyncWeb3.is_address(config.contract_address):
            return ChainClientStatus(configured=False, reason="invalid contract address")

        try:
            account = Account.from_key(config.private_key)
        except Exception:
            # Never log the key material itself.
            return ChainClientStatus(configured=False, reason="invalid private key")

        self._w3 = w3 or AsyncWeb3(AsyncHTTPProvider(config.rpc_url))
        self._account = account
        contract_address = AsyncWeb3.to_checksum_address(config.contract_address)
        self._contract = self._w3.eth.contract(address=contract_address, abi=MINT_CONTRACT_ABI)
        return ChainClientStatus(
            configured=True,
            signer_address=account.address,
            contract_address=contract_address,
        )

    @property
    def is_configured(self) -> bool:
        return self.status.configured

    @property
    def contract_address(self) -> str | None:
        return self.status.contract_address

    def _require_configured(self) -> None:
        if not self.status.configured:
            raise ChainNotConfiguredError(f"Blockchain service not configured: {self.status.reason}")

    @staticmethod
    def _checksum(address: str | None, *, role: str) -> str:
        if not address or not AsyncWeb3.is_address(address):
            raise MissingWalletAddressError(f"Invalid or missing {role} wallet address")
        return AsyncWeb3.to_checksum_address(address)

    async def submit_mint(
        self,
        request: MintRequest,
        *,
        on_broadcast: Callable[[str], Awaitable[Any]] | None = None,
    ) -> ChainSubmission:
        """Build, sign and broadcast ``mintBatch`` and wait for confirmations.

        Every failure is raised as a ``ChainError`` subclass. Failures after the
        transaction may have reached the network carry its ``tx_hash``.
        ``on_broadcast`` is awaited with the hash as soon as it is sent.
        """
        self._require_configured()
        collector = self._checksum(request.collector_address, role="collector")
        recycler = self._checksum(request.recycler_address, role="recycler")
        sender = self._account.address

        # The contract takes the weight as an 18-decimal token amount.
        amount = AsyncWeb3.to_wei(int(request.weight_grams), "ether")
        fn = self._contract.functions.mintBatch(collector, recycler, amount, request.ipfs_hash)

        try:
            nonce = await self._w3.eth.get_transaction_count(sender, "pending")
        except Exception as exc:
            raise classify_chain_exception(exc, stage="nonce") from exc

        try:
            estimate = await fn.estimate_gas({"from": sender})
        except Exception as exc:
            raise classify_chain_exception(exc, stage="estimate_gas") from exc
        gas_limit = gas_limit_with_buffer(estimate, self.config.gas_buffer_percent)

        try:
            tx_params: dict[str, Any] = {
                "from": sender,
                "nonce": nonce,
                "gas": gas_limit,
                "chainId": await self._w3.eth.chain_id,
            }
            tx_params.update(await self._fee_fields())
            tx = await fn.build_transaction(tx_params)
            signed = self._account.sign_transaction(tx)
        except Exception as exc:
            raise classify_chain_exception(exc, stage="build") from exc

        tx_hash = AsyncWeb3.to_hex(signed.hash)
        try:
            await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as exc:
            err = classify_chain_exception(exc, stage="broadcast")
            # A generic send failure (timeout, dropped connection) may still have
            # delivered the transaction.
            if type(err) is ChainTransactionError:
                err.tx_hash = tx_hash
            raise err from exc

        logger.info(
            "chain.mint_broadcast batch_id=%s tx_hash=%s nonce=%s gas_limit=%s",
            request.batch_id,
            tx_hash,
            nonce,
            gas_limit,
        )
        if on_broadcast is not None:
            try:
                await on_broadcast(tx_hash)
            except Exception:
                logger.exception("chain.on_broadcast_failed batch_id=%s tx_hash=%s", request.batch_id, tx_hash)

        return await self.confirm_mint(tx_hash)

    async def confirm_mint(self, tx_hash: str) -> ChainSubmission:
        """Wait for an already broadcast mint to confirm. Never sends a transaction."""
        self._require_configured()
        with log_duration(logger, "chain.wait_confirmations", level=logging.INFO, tx_hash=tx_hash):
            receipt = await self._wait_for_confirmations(tx_hash)
        return ChainSubmission(
            transaction_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
        )

    async def _fee_fields(self) -> dict[str, int]:
        latest = await self._w3.eth.get_block("latest")
        base_fee = latest.get("baseFeePerGas")
        if base_fee is None:
            return {"gasPrice": await self._w3.eth.gas_price}
        priority = await self._w3.eth.max_priority_fee
        return {"maxFeePerGas": int(base_fee) * 2 + int(priority), "maxPriorityFeePerGas": int(priority)}

    async def _wait_for_confirmations(self, tx_hash: str) -> Any:
        """Poll ``tx_hash`` until its receipt has ``confirmations`` blocks on top.

        Only this hash is polled. RPC errors while polling are logged and polled
        again until ``receipt_timeout_seconds`` runs out.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.receipt_timeout_seconds
        receipt = None
        while True:
            try:
                if receipt is None:
                    receipt = await self._w3.eth.get_transaction_receipt(tx_hash)
                    if receipt and int(receipt.get("status", 1)) == 0:
                        raise ContractRevertError(
                            f"Contract revert: transaction {tx_hash} reverted in block {receipt['blockNumber']}",
                            tx_hash=tx_hash,
                        )
                if receipt:
                    target_block = int(receipt["blockNumber"]) + max(0, self.config.confirmations - 1)
                    if int(await self._w3.eth.block_number) >= target_block:
                        return receipt
            except TransactionNotFound:
                pass
            except ChainError:
                raise
            except Exception as exc:
                logger.warning("chain.confirmation_poll_failed tx_hash=%s error=%s", tx_hash, exc)

            if loop.time() >= deadline:
                if not receipt:
                    raise NoReceiptError(f"Transaction receipt not received for {tx_hash}", tx_hash=tx_hash)
                raise ChainTransactionError(
                    f"Timed out waiting for {self.config.confirmations} confirmations of {tx_hash}",
                    tx_hash=tx_hash,
                )
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def get_receipt(self, tx_hash: str) -> ReceiptStatus:
        self._require_configured()
        try:
            receipt = await self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return ReceiptStatus(found=False)
        except Exception as exc:
            raise classify_chain_exception(exc, stage="receipt") from exc
        if not receipt:
            return ReceiptStatus(found=False)
        return ReceiptStatus(
            found=True,
            succeeded=int(receipt.get("status", 0)) == 1,
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
        )

    async def get_chain_id(self) -> int:
        self._require_configured()
        try:
            chain_id = int(await self._w3.eth.chain_id)
        except Exception as exc:
            raise classify_chain_exception(exc, stage="chain_id") from exc
        expected = self.config.expected_chain_id
        if expected and chain_id != expected:
            logger.warning("chain.unexpected_chain_id expected=%s actual=%s", expected, chain_id)
        return chain_id

    async def get_total_minted(self) -> int:
        self._require_configured()
        try:
            return int(await self._contract.functions.totalMinted().call())
        except Exception as exc:
            raise classify_chain_exception(exc, stage="call") from exc
