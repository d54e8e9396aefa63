"""Add merge journal and candidate claim fields

Revision ID: 002_add_merge_journal
Revises: 001_initial
Create Date: 2026-09-28 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '002_add_merge_journal'
down_revision = '001_initial'
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Claim fields on duplicate_candidates
    op.add_column('duplicate_candidates', sa.Column('claimed_by', sa.String(64), nullable=True))
    op.add_column('duplicate_candidates', sa.Column('claimed_at', sa.DateTime(), nullable=True))

    # Merge journal table
    op.create_table(
        'merge_journal',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('merge_key', sa.String(length=128), nullable=False),
        sa.Column('keep_product_id', sa.Integer(), nullable=False),
        sa.Column('merge_product_id', sa.Integer(), nullable=False),
        sa.Column('variant_name', sa.Text(), nullable=False),
        sa.Column('canonical_name', sa.Text(), nullable=False),
        sa.Column('records_affected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_completed_step', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='in_progress'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('audit_entry_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['audit_entry_id'], ['merge_audit_log.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('tenant_id', 'merge_key', name='uq_merge_journal_key'),
    )


def downgrade() -> None:
    op.drop_table('merge_journal')
    op.drop_column('duplicate_candidates', 'claimed_at')
    op.drop_column('duplicate_candidates', 'claimed_by')
