"""Add peer-to-peer loans and loan ledger tables

Revision ID: 20261017_1200_p2p_loans
Revises:
Create Date: 2026-10-17 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261017_1200_p2p_loans'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ============================================================
    # Loans Table
    # ============================================================
    op.create_table('p2p_loans',
        sa.Column('id', sa.String(length=36), nullable=False),
        # Parties
        sa.Column('borrower_identity', sa.String(length=100), nullable=False),
        sa.Column('lender_identity', sa.String(length=100), nullable=True),
        # Terms
        sa.Column('requested_amount', sa.Numeric(precision=36, scale=8), nullable=False),
        sa.Column('interest_rate', sa.Numeric(precision=9, scale=4), nullable=False),
        sa.Column('term_days', sa.Integer(), nullable=False),
        sa.Column('purpose', sa.Text(), nullable=False),
        sa.Column('principal_token', sa.String(length=20), nullable=True),
        # Collateral
        sa.Column('collateral_type', sa.Enum('nft', 'crypto', name='collateral_type'), nullable=False),
        sa.Column('collateral_chain', sa.String(length=30), nullable=False),
        sa.Column('collateral_contract', sa.String(length=255), nullable=False),
        sa.Column('collateral_token_id', sa.String(length=255), nullable=True),
        sa.Column('collateral_estimated_value', sa.Numeric(precision=36, scale=8), nullable=False),
        sa.Column('risk_score', sa.Numeric(precision=5, scale=2), nullable=True),
        # Ledger aggregates
        sa.Column('funded_amount', sa.Numeric(precision=36, scale=8), nullable=True),
        sa.Column('repaid_amount', sa.Numeric(precision=36, scale=8), nullable=False, server_default='0'),
        sa.Column('status', sa.Enum('listed', 'funded', 'repaid', 'defaulted', 'cancelled', name='p2p_loan_status'), nullable=False),
        # Lifecycle
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('listed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('funded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('due_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('repaid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('defaulted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        # Optimistic concurrency
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint('funded_amount IS NULL OR (funded_amount >= 0 AND funded_amount <= requested_amount)', name='ck_p2p_loans_funded_range'),
        sa.CheckConstraint('repaid_amount >= 0', name='ck_p2p_loans_repaid_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_p2p_loans_borrower_identity'), 'p2p_loans', ['borrower_identity'], unique=False)
    op.create_index(op.f('ix_p2p_loans_lender_identity'), 'p2p_loans', ['lender_identity'], unique=False)
    op.create_index(op.f('ix_p2p_loans_collateral_chain'), 'p2p_loans', ['collateral_chain'], unique=False)
    op.create_index(op.f('ix_p2p_loans_status'), 'p2p_loans', ['status'], unique=False)

    # ============================================================
    # Loan Ledger Table (append-only)
    # ============================================================
    op.create_table('p2p_loan_ledger',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('loan_id', sa.String(length=36), nullable=False),
        sa.Column('entry_type', sa.Enum('funding', 'repayment', name='p2p_ledger_entry_type'), nullable=False),
        sa.Column('actor_identity', sa.String(length=100), nullable=False),
        sa.Column('amount', sa.Numeric(precision=36, scale=8), nullable=False),
        sa.Column('transaction_hash', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('amount > 0', name='ck_p2p_loan_ledger_amount_positive'),
        sa.ForeignKeyConstraint(['loan_id'], ['p2p_loans.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_p2p_loan_ledger_loan_created', 'p2p_loan_ledger', ['loan_id', 'created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_p2p_loan_ledger_loan_created', table_name='p2p_loan_ledger')
    op.drop_table('p2p_loan_ledger')

    op.drop_index(op.f('ix_p2p_loans_status'), table_name='p2p_loans')
    op.drop_index(op.f('ix_p2p_loans_collateral_chain'), table_name='p2p_loans')
    op.drop_index(op.f('ix_p2p_loans_lender_identity'), table_name='p2p_loans')
    op.drop_index(op.f('ix_p2p_loans_borrower_identity'), table_name='p2p_loans')
    op.drop_table('p2p_loans')

    # Drop enums
    op.execute("DROP TYPE IF EXISTS p2p_ledger_entry_type")
    op.execute("DROP TYPE IF EXISTS p2p_loan_status")
    op.execute("DROP TYPE IF EXISTS collateral_type")
