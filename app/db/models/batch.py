import uuid
from decimal import Decimal
from sqlalchemy import (
    BigInteger, CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric, String, Table, Text,
    Uuid, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.db.base import Base


transaction_batch = Table(
    "transaction_batch",
    Base.metadata,
    Column("transaction_id", Uuid(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), primary_key=True),
    Column("batch_id", Uuid(as_uuid=True), ForeignKey("batches.id", ondelete="CASCADE"), primary_key=True, index=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
)


class Batch(Base):
    __tablename__ = "batches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    collector_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey('users.id', ondelete='RESTRICT'), nullable=False, index=True)
    recycler_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey('users.id', ondelete='SET NULL'), index=True)
    batch_name: Mapped[str] = mapped_column(String(100), nullable=False)
    total_weight_grams: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    verified_weight_grams: Mapped[int | None] = mapped_column(Integer)

    # Verification
    verification_status: Mapped[str] = mapped_column(String(20), nullable=False, default='pending', index=True)
    weight_difference_percentage: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    ipfs_proof_hash: Mapped[str | None] = mapped_column(String(64), index=True)
    proof_type: Mapped[str | None] = mapped_column(String(20))
    verification_notes: Mapped[str | None] = mapped_column(Text)
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    verified_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    blockchain_batch_id: Mapped[str | None] = mapped_column(String(66), index=True)

    # Minting (meaningful only once verification_status == 'verified')
    mint_status: Mapped[str | None] = mapped_column(String(20), index=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), index=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger)
    gas_used: Mapped[int | None] = mapped_column(BigInteger)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    mint_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    collector = relationship("User", foreign_keys=[collector_id])
    recycler = relationship("User", foreign_keys=[recycler_id])
    transactions = relationship("Transaction", secondary=transaction_batch, order_by="Transaction.created_at")

    __table_args__ = (
        CheckConstraint("verification_status IN ('pending', 'verified', 'rejected')", name='chk_batch_verification_status'),
        CheckConstraint("mint_status IS NULL OR mint_status IN ('PENDING_MINT', 'MINTED', 'FAILED_ON_CHAIN', 'RETRYING')", name='chk_batch_mint_status'),
        CheckConstraint("proof_type IS NULL OR proof_type IN ('photo', 'video', 'document')", name='chk_batch_proof_type'),
        CheckConstraint("retry_count >= 0", name='chk_batch_retry_count_non_negative'),
    )
