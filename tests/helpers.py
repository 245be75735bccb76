"""Shared test doubles and seed helpers."""
from __future__ import annotations

import asyncio
import itertools
import uuid
from typing import Any, Iterable

from sqlalchemy import update

from app.core.batches import states
from app.core.batches.gateway import PersistenceGateway
from app.core.minting.chain_client import ChainClientStatus, ChainSubmission, MintRequest, ReceiptStatus
from app.core.minting.errors import ChainError
from app.db.models.batch import Batch
from app.db.models.transaction import Transaction
from app.db.models.user import User
from app.utils.security import create_access_token

IPFS_HASH = "Qm" + "a" * 44

_seq = itertools.count(1)
_UNSET: Any = object()


class FakeChainClient:
    """In-memory stand-in for ``ChainClient``.

    ``outcomes`` is consumed one entry per ``submit_mint`` call: an exception is
    raised, a ``ChainSubmission`` is returned, and an exhausted list succeeds with
    a generated hash. An exception carrying ``tx_hash`` counts as broadcast.
    ``confirm_outcomes`` works the same way for ``confirm_mint``. Setting ``gate``
    blocks submissions until it is set.
    """

    def __init__(self, *, configured: bool = True, outcomes: Iterable[Any] = (), confirm_outcomes: Iterable[Any] = ()):
        self.configured = configured
        self.outcomes: list[Any] = list(outcomes)
        self.confirm_outcomes: list[Any] = list(confirm_outcomes)
        self.requests: list[MintRequest] = []
        self.broadcasts: list[str] = []
        self.confirmed: list[str] = []
        self.receipts: dict[str, ReceiptStatus] = {}
        self.gate: asyncio.Event | None = None
        self.chain_id = 31337
        self.total_minted = 42
        self.contract_address = "0x" + "ab" * 20
        self._hashes = itertools.count(1)

    @property
    def is_configured(self) -> bool:
        return self.configured

    @property
    def status(self) -> ChainClientStatus:
        if self.configured:
            return ChainClientStatus(configured=True, contract_address=self.contract_address)
        return ChainClientStatus(configured=False, reason="missing CHAIN_RPC_URL")

    async def submit_mint(self, request: MintRequest, *, on_broadcast=None) -> ChainSubmission:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()

        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, ChainError) and outcome.tx_hash:
            await self._broadcast(outcome.tx_hash, on_broadcast)
        if isinstance(outcome, BaseException):
            raise outcome
        if not isinstance(outcome, ChainSubmission):
            n = next(self._hashes)
            outcome = ChainSubmission(transaction_hash="0x%064x" % n, block_number=1000 + n, gas_used=85000)
        await self._broadcast(outcome.transaction_hash, on_broadcast)
        return outcome

    async def _broadcast(self, tx_hash: str, on_broadcast) -> None:
        self.broadcasts.append(tx_hash)
        if on_broadcast is not None:
            await on_broadcast(tx_hash)

    async def confirm_mint(self, tx_hash: str) -> ChainSubmission:
        self.confirmed.append(tx_hash)
        outcome = self.confirm_outcomes.pop(0) if self.confirm_outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, ChainSubmission):
            return outcome
        return ChainSubmission(transaction_hash=tx_hash, block_number=2000, gas_used=85000)

    async def get_receipt(self, tx_hash: str) -> ReceiptStatus:
        return self.receipts.get(tx_hash, ReceiptStatus(found=False))

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def get_total_minted(self) -> int:
        return self.total_minted


def next_wallet() -> str:
    return "0x%040x" % next(_seq)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, role=user.role)}"}


async def create_user(
    session_factory,
    role: str,
    *,
    wallet_address: str | None = _UNSET,
    is_active: bool = True,
) -> User:
    n = next(_seq)
    user = User(
        username=f"{role}_{n}",
        email=f"{role}_{n}@example.org",
        role=role,
        wallet_address=next_wallet() if wallet_address is _UNSET else wallet_address,
        is_active=is_active,
    )
    async with session_factory() as session:
        session.add(user)
        await session.commit()
        await session.refresh(user)
    return user


async def create_collection(
    session_factory,
    *,
    collector: User,
    citizen: User,
    weight_grams: int,
) -> Transaction:
    tx = Transaction(
        citizen_id=citizen.id,
        collector_id=collector.id,
        weight_grams=weight_grams,
        status=states.TX_PENDING_BATCH,
    )
    async with session_factory() as session:
        session.add(tx)
        await session.commit()
        await session.refresh(tx)
    return tx


async def create_batch(
    session_factory,
    *,
    collector: User,
    weights: Iterable[int],
    citizen: User | None = None,
) -> Batch:
    """Seed collections for ``collector`` and group them into one pending batch."""
    citizen = citizen or await create_user(session_factory, "citizen")
    tx_ids: list[uuid.UUID] = []
    for w in weights:
        tx = await create_collection(session_factory, collector=collector, citizen=citizen, weight_grams=w)
        tx_ids.append(tx.id)
    return await PersistenceGateway(session_factory).create_batch(
        collector_id=collector.id,
        batch_name=f"batch-{next(_seq)}",
        transaction_ids=tx_ids,
    )


async def create_verified_batch(
    session_factory,
    *,
    collector: User,
    recycler: User,
    weights: Iterable[int] = (1000,),
) -> Batch:
    batch = await create_batch(session_factory, collector=collector, weights=weights)
    verified = await PersistenceGateway(session_factory).update_batch_verification(
        batch.id,
        recycler_id=recycler.id,
        verification_status=states.VERIFICATION_VERIFIED,
        verified_weight_grams=batch.total_weight_grams,
        weight_difference_percentage=0,
        ipfs_proof_hash=IPFS_HASH,
        proof_type="photo",
        blockchain_batch_id=f"BATCH_test_{next(_seq)}",
    )
    assert verified is not None
    return verified


async def set_batch_fields(session_factory, batch_id: uuid.UUID, **values: Any) -> None:
    async with session_factory() as session:
        await session.execute(update(Batch).where(Batch.id == batch_id).values(**values))
        await session.commit()
