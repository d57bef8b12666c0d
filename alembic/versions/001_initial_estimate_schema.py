"""Initial estimate schema

Revision ID: 001_initial_estimate_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

Creates estimates, change_requests, estimate_versions and line_items.
Monetary columns are integer cents.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_initial_estimate_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'estimates',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='draft'),
        sa.Column('customer_name', sa.String(), nullable=True),
        sa.Column('customer_email', sa.String(), nullable=True),
        sa.Column('event_name', sa.String(), nullable=True),
        sa.Column('event_date', sa.Date(), nullable=True),
        sa.Column('start_time', sa.String(20), nullable=True),
        sa.Column('guest_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('compliance_level', sa.String(50), nullable=True),
        sa.Column('requires_po_number', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('subtotal', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('active_version_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_estimates_status', 'estimates', ['status'])

    op.create_table(
        'change_requests',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('estimate_id', sa.String(36), sa.ForeignKey('estimates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('customer_email', sa.String(), nullable=True),
        sa.Column('request_type', sa.String(50), nullable=False, server_default='other'),
        sa.Column('priority', sa.String(20), nullable=False, server_default='medium'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('customer_comments', sa.Text(), nullable=True),
        sa.Column('requested_changes', sa.JSON(), nullable=False),
        sa.Column('estimated_cost_change', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('admin_response', sa.Text(), nullable=True),
        sa.Column('final_cost_change', sa.Integer(), nullable=True),
        sa.Column('reviewed_by', sa.String(100), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_change_requests_estimate_id', 'change_requests', ['estimate_id'])
    op.create_index('ix_change_requests_status', 'change_requests', ['status'])

    op.create_table(
        'estimate_versions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('estimate_id', sa.String(36), sa.ForeignKey('estimates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('change_request_id', sa.String(36), sa.ForeignKey('change_requests.id'), nullable=True),
        sa.Column('version_number', sa.Integer(), nullable=False),
        sa.Column('line_items', sa.JSON(), nullable=False),
        sa.Column('subtotal', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('created_by', sa.String(100), nullable=False, server_default='system'),
        sa.UniqueConstraint('estimate_id', 'version_number', name='uq_estimate_versions_number'),
    )
    op.create_index('ix_estimate_versions_estimate_id', 'estimate_versions', ['estimate_id'])
    # At most one active version per estimate
    op.create_index(
        'uq_estimate_versions_one_active',
        'estimate_versions',
        ['estimate_id'],
        unique=True,
        sqlite_where=sa.text("status = 'active'"),
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        'line_items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('estimate_id', sa.String(36), sa.ForeignKey('estimates.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('title', sa.String(), nullable=False, server_default=''),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('category', sa.String(50), nullable=False, server_default='other'),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('unit_price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_index('ix_line_items_estimate_id', 'line_items', ['estimate_id'])
    op.create_index('ix_line_items_sort_order', 'line_items', ['estimate_id', 'sort_order'])


def downgrade() -> None:
    op.drop_index('ix_line_items_sort_order', table_name='line_items')
    op.drop_index('ix_line_items_estimate_id', table_name='line_items')
    op.drop_table('line_items')

    op.drop_index('uq_estimate_versions_one_active', table_name='estimate_versions')
    op.drop_index('ix_estimate_versions_estimate_id', table_name='estimate_versions')
    op.drop_table('estimate_versions')

    op.drop_index('ix_change_requests_status', table_name='change_requests')
    op.drop_index('ix_change_requests_estimate_id', table_name='change_requests')
    op.drop_table('change_requests')

    op.drop_index('ix_estimates_status', table_name='estimates')
    op.drop_table('estimates')
