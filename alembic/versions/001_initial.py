"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-09-14 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Organizations table
    op.create_table(
        'organizations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('duplicate_scan_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('scan_frequency_hours', sa.Integer(), nullable=False, server_default='24'),
        sa.Column('last_duplicate_scan', sa.DateTime(), nullable=True),
        sa.Column('auto_merge_threshold', sa.Float(), nullable=False, server_default='0.90'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            'scan_frequency_hours >= 1 AND scan_frequency_hours <= 168',
            name='ck_organization_scan_frequency',
        ),
        sa.CheckConstraint(
            'auto_merge_threshold >= 0.80 AND auto_merge_threshold <= 0.95',
            name='ck_organization_auto_merge_threshold',
        ),
    )

    # Products table
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('product_name', sa.Text(), nullable=False),
        sa.Column('total_revenue', sa.Numeric(precision=14, scale=2), nullable=False, server_default='0'),
        sa.Column('total_units', sa.Numeric(precision=14, scale=2), nullable=False, server_default='0'),
        sa.Column('total_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('first_sale_date', sa.Date(), nullable=True),
        sa.Column('last_sale_date', sa.Date(), nullable=True),
        sa.Column('merged_into_id', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['merged_into_id'], ['products.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('tenant_id', 'product_name', name='uq_product_tenant_name'),
    )

    # Sales records table
    op.create_table(
        'sales_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('product_name', sa.Text(), nullable=False),
        sa.Column('account_name', sa.Text(), nullable=True),
        sa.Column('order_date', sa.Date(), nullable=True),
        sa.Column('quantity', sa.Numeric(precision=14, scale=2), nullable=False, server_default='1'),
        sa.Column('revenue', sa.Numeric(precision=14, scale=2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['organizations.id'], ondelete='CASCADE'),
    )

    # Inventory tables
    op.create_table(
        'inventory_importer',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Numeric(precision=14, scale=2), nullable=False, server_default='0'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('tenant_id', 'product_id', name='uq_inventory_importer_product'),
    )
    op.create_table(
        'inventory_distributor',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('distributor_id', sa.Integer(), nullable=False),
        sa.Column('initial_quantity', sa.Numeric(precision=14, scale=2), nullable=False, server_default='0'),
        sa.Column('current_quantity', sa.Numeric(precision=14, scale=2), nullable=False, server_default='0'),
        sa.Column('last_updated', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.UniqueConstraint(
            'tenant_id', 'product_id', 'distributor_id', name='uq_inventory_distributor_product'
        ),
    )
    op.create_table(
        'inventory_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('distributor_id', sa.Integer(), nullable=True),
        sa.Column('transaction_type', sa.String(length=32), nullable=False),
        sa.Column('quantity_change', sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column('previous_quantity', sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column('new_quantity', sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
    )

    # Scan runs table
    op.create_table(
        'scan_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=True),
        sa.Column('trigger', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='running'),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('products_scanned', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('candidates_found', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('high_confidence_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('scan_parameters', sa.JSON(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.CheckConstraint(
            "status IN ('running', 'completed', 'failed')", name='ck_scan_run_status'
        ),
    )

    # Duplicate candidates table
    op.create_table(
        'duplicate_candidates',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('product_a_id', sa.Integer(), nullable=False),
        sa.Column('product_b_id', sa.Integer(), nullable=False),
        sa.Column('product_a_name', sa.Text(), nullable=False),
        sa.Column('product_b_name', sa.Text(), nullable=False),
        sa.Column('confidence_score', sa.Float(), nullable=False),
        sa.Column('similarity_details', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('scan_run_id', sa.Integer(), nullable=True),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.Column('reviewed_by', sa.String(length=64), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('user_decision', sa.JSON(), nullable=True),
        sa.Column('archived_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_a_id'], ['products.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_b_id'], ['products.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['scan_run_id'], ['scan_runs.id'], ondelete='SET NULL'),
        sa.UniqueConstraint(
            'tenant_id', 'product_a_id', 'product_b_id', name='uq_duplicate_candidate_pair'
        ),
        sa.CheckConstraint('product_a_id < product_b_id', name='ck_duplicate_candidate_ordering'),
        sa.CheckConstraint(
            'confidence_score >= 0 AND confidence_score <= 1',
            name='ck_duplicate_candidate_confidence',
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'merged', 'dismissed')", name='ck_duplicate_candidate_status'
        ),
    )

    # Alias mappings table
    op.create_table(
        'product_alias_mappings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('variant_name', sa.Text(), nullable=False),
        sa.Column('canonical_name', sa.Text(), nullable=False),
        sa.Column('confidence_score', sa.Float(), nullable=True),
        sa.Column('source', sa.String(length=20), nullable=False, server_default='manual'),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('tenant_id', 'variant_name', name='uq_alias_tenant_variant'),
        sa.CheckConstraint("source IN ('manual', 'ai_confirmed')", name='ck_alias_source'),
    )

    # Merge audit log table
    op.create_table(
        'merge_audit_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('merge_type', sa.String(length=20), nullable=False),
        sa.Column('source_product_names', sa.JSON(), nullable=False),
        sa.Column('canonical_name', sa.Text(), nullable=False),
        sa.Column('confidence_score', sa.Float(), nullable=True),
        sa.Column('reasoning', sa.Text(), nullable=True),
        sa.Column('records_affected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('performed_by', sa.String(length=64), nullable=True),
        sa.Column('can_undo', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('merge_key', sa.String(length=128), nullable=False),
        sa.Column('performed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['organizations.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('tenant_id', 'merge_key', name='uq_merge_audit_key'),
        sa.CheckConstraint("merge_type IN ('manual', 'ai_bulk')", name='ck_merge_audit_type'),
    )

    # Create indexes
    op.create_index('ix_products_tenant_id', 'products', ['tenant_id'])
    op.create_index('ix_products_tenant_revenue', 'products', ['tenant_id', 'total_revenue'])
    op.create_index('ix_sales_records_tenant_product', 'sales_records', ['tenant_id', 'product_name'])
    op.create_index('ix_inventory_importer_product_id', 'inventory_importer', ['product_id'])
    op.create_index('ix_inventory_distributor_product_id', 'inventory_distributor', ['product_id'])
    op.create_index('ix_inventory_transactions_product_id', 'inventory_transactions', ['product_id'])
    op.create_index('ix_scan_runs_run_id', 'scan_runs', ['run_id'])
    op.create_index('ix_scan_runs_tenant_started', 'scan_runs', ['tenant_id', 'started_at'])
    op.create_index('ix_duplicate_candidates_tenant_status', 'duplicate_candidates', ['tenant_id', 'status'])
    op.create_index('ix_alias_tenant_canonical', 'product_alias_mappings', ['tenant_id', 'canonical_name'])
    op.create_index('ix_merge_audit_tenant_performed', 'merge_audit_log', ['tenant_id', 'performed_at'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_merge_audit_tenant_performed', table_name='merge_audit_log')
    op.drop_index('ix_alias_tenant_canonical', table_name='product_alias_mappings')
    op.drop_index('ix_duplicate_candidates_tenant_status', table_name='duplicate_candidates')
    op.drop_index('ix_scan_runs_tenant_started', table_name='scan_runs')
    op.drop_index('ix_scan_runs_run_id', table_name='scan_runs')
    op.drop_index('ix_inventory_transactions_product_id', table_name='inventory_transactions')
    op.drop_index('ix_inventory_distributor_product_id', table_name='inventory_distributor')
    op.drop_index('ix_inventory_importer_product_id', table_name='inventory_importer')
    op.drop_index('ix_sales_records_tenant_product', table_name='sales_records')
    op.drop_index('ix_products_tenant_revenue', table_name='products')
    op.drop_index('ix_products_tenant_id', table_name='products')

    # Drop tables
    op.drop_table('merge_audit_log')
    op.drop_table('product_alias_mappings')
    op.drop_table('duplicate_candidates')
    op.drop_table('scan_runs')
    op.drop_table('inventory_transactions')
    op.drop_table('inventory_distributor')
    op.drop_table('inventory_importer')
    op.drop_table('sales_records')
    op.drop_table('products')
    op.drop_table('organizations')
