from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Sequence

from sqlalchemy import case, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.batches import states
from app.db.models.audit_log import AuditLog
from app.db.models.batch import Batch, transaction_batch
from app.db.models.transaction import Transaction
from app.db.models.user import User
from app.utils.exceptions import (
    BadRequestException,
    ConflictException,
    ForbiddenException,
    NotFoundException,
)
from app.utils.request_id import current_request_id

logger = logging.getLogger(__name__)

_PERCENT_QUANTUM = Decimal("0.01")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class TransactionSummaryRow:
    id: uuid.UUID
    citizen_id: uuid.UUID
    weight_grams: int
    created_at: datetime | None


@dataclass(frozen=True)
class BatchTransactionSummary:
    batch_id: uuid.UUID
    transactions: tuple[TransactionSummaryRow, ...]

    @property
    def count(self) -> int:
        return len(self.transactions)

    @property
    def total_weight_grams(self) -> int:
        return sum(int(t.weight_grams) for t in self.transactions)


class PersistenceGateway:
    """Storage operations for batches, collection transactions and the audit log.

    Every operation opens its own short-lived session; callers never hold a session
    across chain round-trips.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # --- reads ---

    async def get_batch(self, batch_id: uuid.UUID | str) -> Batch | None:
        async with self._session_factory() as session:
            return await session.get(Batch, as_uuid(batch_id))

    async def get_user(self, user_id: uuid.UUID | str) -> User | None:
        async with self._session_factory() as session:
            return await session.get(User, as_uuid(user_id))

    async def get_batch_transaction_summary(
        self, batch_id: uuid.UUID | str
    ) -> BatchTransactionSummary | None:
        """Member transactions of a batch, read fresh from storage.

        Returns None when the batch does not exist.
        """
        bid = as_uuid(batch_id)
        async with self._session_factory() as session:
            exists = await session.scalar(select(Batch.id).where(Batch.id == bid))
            if exists is None:
                return None
            rows = (
                await session.execute(
                    select(
                        Transaction.id,
                        Transaction.citizen_id,
                        Transaction.weight_grams,
                        Transaction.created_at,
                    )
                    .join(transaction_batch, transaction_batch.c.transaction_id == Transaction.id)
                    .where(transaction_batch.c.batch_id == bid)
                    .order_by(Transaction.created_at.asc())
                )
            ).all()
        return BatchTransactionSummary(
            batch_id=bid,
            transactions=tuple(
                TransactionSummaryRow(
                    id=r.id,
                    citizen_id=r.citizen_id,
                    weight_grams=int(r.weight_grams),
                    created_at=r.created_at,
                )
                for r in rows
            ),
        )

    async def get_user_wallet_addresses(
        self, collector_id: uuid.UUID | str | None, recycler_id: uuid.UUID | str | None
    ) -> tuple[str | None, str | None]:
        ids = [as_uuid(x) for x in (collector_id, recycler_id) if x is not None]
        if not ids:
            return None, None
        async with self._session_factory() as session:
            rows = (
                await session.execute(select(User.id, User.wallet_address).where(User.id.in_(ids)))
            ).all()
        wallets = {r.id: (r.wallet_address or "").strip() or None for r in rows}
        collector = wallets.get(as_uuid(collector_id)) if collector_id is not None else None
        recycler = wallets.get(as_uuid(recycler_id)) if recycler_id is not None else None
        return collector, recycler

    async def select_retry_candidates(
        self,
        *,
        max_retries: int,
        cooldown_seconds: int,
        limit: int,
        now: datetime | None = None,
    ) -> list[uuid.UUID]:
        cutoff = (now or utc_now()) - timedelta(seconds=int(cooldown_seconds))
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(Batch.id)
                    .where(
                        Batch.mint_status == states.MINT_FAILED,
                        Batch.retry_count < int(max_retries),
                        or_(Batch.last_attempt.is_(None), Batch.last_attempt < cutoff),
                    )
                    .order_by(Batch.created_at.asc())
                    .limit(int(limit))
                )
            ).scalars().all()
        return list(rows)

    async def get_recycler_stats(self, recycler_id: uuid.UUID | str) -> dict[str, Any]:
        rid = as_uuid(recycler_id)
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(
                        func.count(Batch.id).label("total"),
                        func.count(case((Batch.verification_status == states.VERIFICATION_VERIFIED, 1))).label("approved"),
                        func.count(case((Batch.verification_status == states.VERIFICATION_PENDING, 1))).label("flagged"),
                        func.count(case((Batch.verification_status == states.VERIFICATION_REJECTED, 1))).label("rejected"),
                        func.coalesce(func.avg(Batch.weight_difference_percentage), 0).label("avg_diff"),
                        func.coalesce(func.sum(Batch.verified_weight_grams), 0).label("verified_weight"),
                    ).where(Batch.recycler_id == rid, Batch.verified_at.is_not(None))
                )
            ).one()
        return {
            "total_verifications": int(row.total or 0),
            "approved_batches": int(row.approved or 0),
            "flagged_batches": int(row.flagged or 0),
            "rejected_batches": int(row.rejected or 0),
            "average_weight_difference": Decimal(str(row.avg_diff or 0)).quantize(_PERCENT_QUANTUM, rounding=ROUND_HALF_UP),
            "total_weight_verified": int(row.verified_weight or 0),
        }

    # --- writes ---

    async def record_collection(
        self,
        *,
        collector_id: uuid.UUID | str,
        citizen_id: uuid.UUID | str,
        weight_grams: int,
        eiu_earned: Decimal,
        eiu_fee: Decimal,
        notes: str | None = None,
    ) -> Transaction:
        """Insert a collection and credit the citizen's pending balance in one unit."""
        cid = as_uuid(citizen_id)
        async with self._session_factory() as session:
            async with session.begin():
                citizen = await session.get(User, cid)
                if citizen is None or citizen.role != "citizen":
                    raise BadRequestException("Invalid citizen_id or user is not a citizen.")
                tx = Transaction(
                    citizen_id=cid,
                    collector_id=as_uuid(collector_id),
                    weight_grams=int(weight_grams),
                    eiu_earned=eiu_earned,
                    eiu_fee=eiu_fee,
                    status=states.TX_PENDING_BATCH,
                    notes=notes,
                )
                session.add(tx)
                await session.execute(
                    update(User)
                    .where(User.id == cid)
                    .values(eiu_balance=User.eiu_balance + eiu_earned)
                    .execution_options(synchronize_session=False)
                )
            await session.refresh(tx)
            return tx

    async def create_batch(
        self,
        *,
        collector_id: uuid.UUID | str,
        batch_name: str,
        transaction_ids: Iterable[uuid.UUID | str],
    ) -> Batch:
        """Create a batch and link its transactions; both commit or neither does."""
        owner = as_uuid(collector_id)
        ids = list(dict.fromkeys(as_uuid(t) for t in transaction_ids))
        if not ids:
            raise BadRequestException("At least one transaction is required")

        async with self._session_factory() as session:
            async with session.begin():
                rows = (
                    await session.execute(select(Transaction).where(Transaction.id.in_(ids)))
                ).scalars().all()
                found = {r.id: r for r in rows}

                missing = [str(i) for i in ids if i not in found]
                if missing:
                    raise NotFoundException("Transactions not found", details={"transaction_ids": missing})
                foreign = [str(r.id) for r in rows if r.collector_id != owner]
                if foreign:
                    raise ForbiddenException(
                        "Transactions belong to another collector", details={"transaction_ids": foreign}
                    )
                not_pending = [str(r.id) for r in rows if r.status != states.TX_PENDING_BATCH]
                if not_pending:
                    raise ConflictException(
                        "Transactions are not pending batch assignment", details={"transaction_ids": not_pending}
                    )
                linked = (
                    await session.execute(
                        select(transaction_batch.c.transaction_id).where(transaction_batch.c.transaction_id.in_(ids))
                    )
                ).scalars().all()
                if linked:
                    raise ConflictException(
                        "Transactions already assigned to a batch",
                        details={"transaction_ids": [str(x) for x in linked]},
                    )

                batch = Batch(
                    collector_id=owner,
                    batch_name=batch_name,
                    total_weight_grams=sum(int(found[i].weight_grams) for i in ids),
                    verification_status=states.VERIFICATION_PENDING,
                    retry_count=0,
                )
                session.add(batch)
                await session.flush()
                await session.execute(
                    insert(transaction_batch),
                    [{"transaction_id": i, "batch_id": batch.id} for i in ids],
                )
            await session.refresh(batch)
            logger.info("batch.created batch_id=%s collector_id=%s transactions=%s", batch.id, owner, len(ids))
            return batch

    async def update_batch_verification(
        self,
        batch_id: uuid.UUID | str,
        *,
        recycler_id: uuid.UUID | str,
        verification_status: str,
        verified_weight_grams: int,
        weight_difference_percentage: Decimal,
        ipfs_proof_hash: str | None,
        proof_type: str | None = None,
        verification_notes: str | None = None,
        rejection_reason: str | None = None,
        blockchain_batch_id: str | None = None,
    ) -> Batch | None:
        """Store a verification outcome on a batch that is still pending.

        Returns None when the batch is gone or has already left ``pending``.
        Rejection fails the member transactions in the same unit of work.
        """
        bid = as_uuid(batch_id)
        now = utc_now()
        values: dict[str, Any] = {
            "recycler_id": as_uuid(recycler_id),
            "verification_status": verification_status,
            "verified_weight_grams": int(verified_weight_grams),
            "weight_difference_percentage": Decimal(weight_difference_percentage).quantize(
                _PERCENT_QUANTUM, rounding=ROUND_HALF_UP
            ),
            "ipfs_proof_hash": ipfs_proof_hash,
            "proof_type": proof_type,
            "verification_notes": verification_notes,
            "rejection_reason": rejection_reason,
            "verified_at": now,
            "updated_at": now,
        }
        if blockchain_batch_id is not None:
            values["blockchain_batch_id"] = blockchain_batch_id

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Batch)
                    .where(Batch.id == bid, Batch.verification_status == states.VERIFICATION_PENDING)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
                if verification_status == states.VERIFICATION_REJECTED:
                    await self._set_transaction_status(session, bid, states.TX_FAILED, now)
            return await session.get(Batch, bid)

    async def claim_batch_for_mint(self, batch_id: uuid.UUID | str, *, now: datetime | None = None) -> bool:
        """Compare-and-set a batch into PENDING_MINT.

        Only one concurrent caller can win; the losers see zero updated rows.
        """
        ts = now or utc_now()
        async with self._session_factory() as session:
            result = await session.execute(
                update(Batch)
                .where(
                    Batch.id == as_uuid(batch_id),
                    Batch.verification_status == states.VERIFICATION_VERIFIED,
                    or_(Batch.mint_status.is_(None), Batch.mint_status == states.MINT_FAILED),
                )
                .values(
                    mint_status=states.MINT_PENDING,
                    retry_count=0,
                    last_attempt=ts,
                    mint_error=None,
                    updated_at=ts,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def update_batch_mint_status(
        self,
        batch_id: uuid.UUID | str,
        mint_status: str,
        *,
        retry_count: int | None = None,
        tx_hash: str | None = None,
        block_number: int | None = None,
        gas_used: int | None = None,
        error: str | None = None,
        last_attempt: datetime | None = None,
    ) -> None:
        """Persist a mint checkpoint; MINTED also confirms the member transactions."""
        bid = as_uuid(batch_id)
        now = utc_now()
        values: dict[str, Any] = {"mint_status": mint_status, "mint_error": error, "updated_at": now}
        if retry_count is not None:
            values["retry_count"] = int(retry_count)
        if tx_hash is not None:
            values["tx_hash"] = tx_hash
        if block_number is not None:
            values["block_number"] = int(block_number)
        if gas_used is not None:
            values["gas_used"] = int(gas_used)
        if last_attempt is not None:
            values["last_attempt"] = last_attempt

        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Batch)
                    .where(Batch.id == bid)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if mint_status == states.MINT_MINTED:
                    await self._set_transaction_status(session, bid, states.TX_CONFIRMED, now)

    async def record_mint_broadcast(self, batch_id: uuid.UUID | str, tx_hash: str) -> None:
        """Store the hash of a just-broadcast mint without changing ``mint_status``."""
        now = utc_now()
        async with self._session_factory() as session:
            await session.execute(
                update(Batch)
                .where(Batch.id == as_uuid(batch_id))
                .values(tx_hash=tx_hash, last_attempt=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def fail_stale_mint_attempts(
        self,
        *,
        stale_after_seconds: int,
        error: str,
        now: datetime | None = None,
    ) -> list[uuid.UUID]:
        """Move PENDING_MINT/RETRYING batches untouched since the cutoff to FAILED_ON_CHAIN.

        An attempt sequence writes ``last_attempt`` at every checkpoint, so only
        sequences that died mid-flight (process exit, cancelled task) qualify.
        """
        ts = now or utc_now()
        cutoff = ts - timedelta(seconds=int(stale_after_seconds))
        in_flight = (states.MINT_PENDING, states.MINT_RETRYING)
        async with self._session_factory() as session:
            async with session.begin():
                batch_ids = (
                    await session.execute(
                        select(Batch.id)
                        .where(
                            Batch.mint_status.in_(in_flight),
                            or_(Batch.last_attempt.is_(None), Batch.last_attempt < cutoff),
                        )
                        .order_by(Batch.last_attempt.asc())
                    )
                ).scalars().all()
                if not batch_ids:
                    return []
                await session.execute(
                    update(Batch)
                    .where(Batch.id.in_(batch_ids), Batch.mint_status.in_(in_flight))
                    .values(mint_status=states.MINT_FAILED, mint_error=error, updated_at=ts)
                    .execution_options(synchronize_session=False)
                )
        return list(batch_ids)

    async def mark_batch_transactions(self, batch_id: uuid.UUID | str, status: str) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                return await self._set_transaction_status(session, as_uuid(batch_id), status, utc_now())

    @staticmethod
    async def _set_transaction_status(
        session: AsyncSession, batch_id: uuid.UUID, status: str, now: datetime
    ) -> int:
        member_ids = select(transaction_batch.c.transaction_id).where(transaction_batch.c.batch_id == batch_id)
        result = await session.execute(
            update(Transaction)
            .where(Transaction.id.in_(member_ids))
            .values(status=status, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def append_audit_log(
        self,
        action: str,
        *,
        object_id: uuid.UUID | str | None = None,
        object_type: str = "batch",
        actor_id: uuid.UUID | str | None = None,
        actor_role: str | None = None,
        reason: str | None = None,
        before_state: dict[str, Any] | None = None,
        after_state: dict[str, Any] | None = None,
    ) -> None:
        """Best-effort audit write: failures are logged and never propagate."""
        try:
            async with self._session_factory() as session:
                session.add(
                    AuditLog(
                        actor_id=as_uuid(actor_id) if actor_id is not None else None,
                        actor_role=actor_role,
                        action=action,
                        object_type=object_type,
                        object_id=str(object_id) if object_id is not None else None,
                        reason=reason,
                        before_state=_jsonable(before_state) if before_state is not None else None,
                        after_state=_jsonable(after_state) if after_state is not None else None,
                        request_id=current_request_id(),
                    )
                )
                await session.commit()
        except Exception:
            logger.exception("audit.append_failed action=%s object_id=%s", action, object_id)

    async def list_audit_log(self, object_id: uuid.UUID | str, *, action: str | None = None) -> Sequence[AuditLog]:
        stmt = select(AuditLog).where(AuditLog.object_id == str(object_id))
        if action is not None:
            stmt = stmt.where(AuditLog.action == action)
        async with self._session_factory() as session:
            return (await session.execute(stmt.order_by(AuditLog.timestamp.asc()))).scalars().all()
