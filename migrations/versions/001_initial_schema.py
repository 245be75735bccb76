"""Initial EarthX Hub schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

Users, collection transactions, batches (with mint tracking) and the audit log.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # === USERS ===
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('username', sa.String(50), nullable=False, unique=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('full_name', sa.String(100)),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('wallet_address', sa.String(42), unique=True),
        sa.Column('eiu_balance', sa.Numeric(20, 8), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("role IN ('citizen', 'collector', 'recycler')", name='chk_user_role'),
    )
    op.create_index('idx_users_username', 'users', ['username'])
    op.create_index('idx_users_role', 'users', ['role'])
    op.create_index('idx_users_wallet_address', 'users', ['wallet_address'])

    # === TRANSACTIONS (collection events) ===
    op.create_table(
        'transactions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('citizen_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('collector_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('weight_grams', sa.Integer, nullable=False),
        sa.Column('eiu_earned', sa.Numeric(20, 8), nullable=False, server_default='0'),
        sa.Column('eiu_fee', sa.Numeric(20, 8), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING_BATCH'),
        sa.Column('notes', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('weight_grams >= 10 AND weight_grams <= 50000', name='chk_transaction_weight_range'),
        sa.CheckConstraint("status IN ('PENDING_BATCH', 'CONFIRMED', 'FAILED')", name='chk_transaction_status'),
    )
    op.create_index('idx_transactions_citizen_id', 'transactions', ['citizen_id'])
    op.create_index('idx_transactions_collector_id', 'transactions', ['collector_id'])
    op.create_index('idx_transactions_status', 'transactions', ['status'])
    op.create_index('idx_transactions_created_at', 'transactions', ['created_at'])

    # === BATCHES ===
    op.create_table(
        'batches',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('collector_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('recycler_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('batch_name', sa.String(100), nullable=False),
        sa.Column('total_weight_grams', sa.Integer, nullable=False, server_default='0'),
        sa.Column('verified_weight_grams', sa.Integer),
        sa.Column('verification_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('weight_difference_percentage', sa.Numeric(12, 2)),
        sa.Column('ipfs_proof_hash', sa.String(64)),
        sa.Column('proof_type', sa.String(20)),
        sa.Column('verification_notes', sa.Text),
        sa.Column('rejection_reason', sa.Text),
        sa.Column('verified_at', sa.DateTime(timezone=True)),
        sa.Column('blockchain_batch_id', sa.String(66)),
        sa.Column('mint_status', sa.String(20)),
        sa.Column('tx_hash', sa.String(66)),
        sa.Column('block_number', sa.BigInteger),
        sa.Column('gas_used', sa.BigInteger),
        sa.Column('retry_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_attempt', sa.DateTime(timezone=True)),
        sa.Column('mint_error', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "verification_status IN ('pending', 'verified', 'rejected')",
            name='chk_batch_verification_status',
        ),
        sa.CheckConstraint(
            "mint_status IS NULL OR mint_status IN ('PENDING_MINT', 'MINTED', 'FAILED_ON_CHAIN', 'RETRYING')",
            name='chk_batch_mint_status',
        ),
        sa.CheckConstraint(
            "proof_type IS NULL OR proof_type IN ('photo', 'video', 'document')",
            name='chk_batch_proof_type',
        ),
        sa.CheckConstraint('retry_count >= 0', name='chk_batch_retry_count_non_negative'),
    )
    op.create_index('idx_batches_collector_id', 'batches', ['collector_id'])
    op.create_index('idx_batches_recycler_id', 'batches', ['recycler_id'])
    op.create_index('idx_batches_verification_status', 'batches', ['verification_status'])
    op.create_index('idx_batches_mint_status', 'batches', ['mint_status'])
    op.create_index('idx_batches_tx_hash', 'batches', ['tx_hash'])
    op.create_index('idx_batches_created_at', 'batches', ['created_at'])
    # Retry sweep: FAILED_ON_CHAIN batches ordered by age.
    op.create_index('idx_batches_mint_retry', 'batches', ['mint_status', 'retry_count', 'last_attempt'])

    # === TRANSACTION_BATCH (membership) ===
    op.create_table(
        'transaction_batch',
        sa.Column('transaction_id', sa.Uuid(), sa.ForeignKey('transactions.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('batch_id', sa.Uuid(), sa.ForeignKey('batches.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_transaction_batch_batch_id', 'transaction_batch', ['batch_id'])

    # === AUDIT_LOG ===
    op.create_table(
        'audit_log',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('actor_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('actor_role', sa.String(50)),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('object_type', sa.String(50)),
        sa.Column('object_id', sa.String(64)),
        sa.Column('reason', sa.Text),
        sa.Column('before_state', sa.JSON),
        sa.Column('after_state', sa.JSON),
        sa.Column('request_id', sa.String(64)),
    )
    op.create_index('idx_audit_log_timestamp', 'audit_log', ['timestamp'])
    op.create_index('idx_audit_log_actor_id', 'audit_log', ['actor_id'])
    op.create_index('idx_audit_log_action', 'audit_log', ['action'])
    op.create_index('idx_audit_log_object', 'audit_log', ['object_type', 'object_id'])


def downgrade() -> None:
    op.drop_table('audit_log')
    op.drop_table('transaction_batch')
    op.drop_table('batches')
    op.drop_table('transactions')
    op.drop_table('users')
