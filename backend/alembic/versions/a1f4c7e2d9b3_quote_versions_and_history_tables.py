"""Quote version chains, documents and append-only history tables

Revision ID: a1f4c7e2d9b3
Revises:
Create Date: 2026-10-19T09:12:44.518203
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'a1f4c7e2d9b3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

QUOTE_STATUS = sa.Enum('DRAFT', 'SENT', 'APPROVED', 'DECLINED', 'EXPIRED', 'CONVERTED', name='quotestatus')
ORDER_STATUS = sa.Enum(
    'DRAFT', 'PENDING_APPROVAL', 'APPROVED', 'IN_PRODUCTION', 'ON_HOLD',
    'READY_FOR_DELIVERY', 'DELIVERED', 'COMPLETED', 'CANCELLED', name='orderstatus',
)
JOB_STATUS = sa.Enum('DRAFT', 'PENDING', 'ACTIVE', 'IN_PROGRESS', 'COMPLETED', 'CANCELED', name='jobstatus')
USER_ROLE = sa.Enum('ADMIN', 'MANAGER', 'STAFF', name='userrole')


def _history_columns():
    return [
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('change_type', sa.String(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('changed_by', sa.String(), nullable=False, server_default='system'),
        sa.Column('change_reason', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    ]


def _history_indexes(table: str) -> None:
    op.create_index(f'ix_{table}_change_type', table, ['change_type'])
    op.create_index(f'ix_{table}_changed_by', table, ['changed_by'])
    op.create_index(f'ix_{table}_created_at', table, ['created_at'])


def upgrade() -> None:
    # --- users / customers / materials / settings ---
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('role', USER_ROLE, nullable=False, server_default='STAFF'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'customers',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('contact_person', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'materials',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('code', sa.String(), nullable=False, unique=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('unit', sa.String(), nullable=True),
        sa.Column('unit_cost', sa.Numeric(12, 2), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'company_settings',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('company_name', sa.String(), nullable=True),
        sa.Column('quote_reference_prefix', sa.String(), nullable=False, server_default='QR'),
        sa.Column('last_quote_reference_seq', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    # --- quotes ---
    op.create_table(
        'quotes',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('quote_reference', sa.String(), nullable=False),
        sa.Column('version_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_latest_version', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('parent_quote_id', sa.String(), sa.ForeignKey('quotes.id'), nullable=True),
        sa.Column('change_reason', sa.Text(), nullable=True),
        sa.Column('quote_number', sa.String(), nullable=False, unique=True),
        sa.Column('customer_id', sa.String(), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('created_by_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('status', QUOTE_STATUS, nullable=False, server_default='DRAFT'),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('customer_reference', sa.String(), nullable=True),
        sa.Column('contact_name', sa.String(), nullable=True),
        sa.Column('contact_email', sa.String(), nullable=True),
        sa.Column('contact_phone', sa.String(), nullable=True),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('current_version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_quotes_quote_reference', 'quotes', ['quote_reference'])
    op.create_index('ix_quotes_customer_id', 'quotes', ['customer_id'])
    op.create_index('idx_quote_reference_version', 'quotes', ['quote_reference', 'version_number'], unique=True)
    op.create_index('idx_quote_reference_latest', 'quotes', ['quote_reference', 'is_latest_version'])

    op.create_table(
        'quote_line_items',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('quote_id', sa.String(), sa.ForeignKey('quotes.id', ondelete='CASCADE'), nullable=False),
        sa.Column('material_id', sa.String(), sa.ForeignKey('materials.id'), nullable=True),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('quantity', sa.Numeric(12, 3), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_quote_line_items_quote_id', 'quote_line_items', ['quote_id'])

    # --- orders / jobs ---
    op.create_table(
        'orders',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('project_title', sa.String(), nullable=False),
        sa.Column('quote_ref', sa.String(), nullable=True),
        sa.Column('status', ORDER_STATUS, nullable=False, server_default='DRAFT'),
        sa.Column('customer_id', sa.String(), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('source_quote_id', sa.String(), sa.ForeignKey('quotes.id'), nullable=True),
        sa.Column('created_by_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('project_owner_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=True),
        sa.Column('tax_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('customer_reference', sa.String(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('current_version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])

    op.create_table(
        'jobs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('job_number', sa.String(), nullable=True, unique=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', JOB_STATUS, nullable=False, server_default='DRAFT'),
        sa.Column('customer_id', sa.String(), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('current_version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_jobs_customer_id', 'jobs', ['customer_id'])

    op.create_table(
        'job_materials',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('job_id', sa.String(), sa.ForeignKey('jobs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('material_id', sa.String(), sa.ForeignKey('materials.id'), nullable=False),
        sa.Column('quantity_needed', sa.Numeric(12, 3), nullable=False),
        sa.Column('unit_cost', sa.Numeric(12, 2), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_job_materials_job_id', 'job_materials', ['job_id'])

    # --- documents ---
    op.create_table(
        'documents',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('original_name', sa.String(), nullable=False),
        sa.Column('mime_type', sa.String(), nullable=False),
        sa.Column('file_size', sa.Integer(), nullable=False),
        sa.Column('file_hash', sa.String(64), nullable=False),
        sa.Column('storage_path', sa.String(), nullable=False),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('quote_id', sa.String(), sa.ForeignKey('quotes.id'), nullable=True),
        sa.Column('order_id', sa.String(), sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('job_id', sa.String(), sa.ForeignKey('jobs.id'), nullable=True),
        sa.Column('uploaded_by', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_documents_quote_id', 'documents', ['quote_id'])
    op.create_index('ix_documents_order_id', 'documents', ['order_id'])
    op.create_index('ix_documents_job_id', 'documents', ['job_id'])

    # --- history (append-only) ---
    op.create_table(
        'quote_history',
        *_history_columns(),
        sa.Column('quote_id', sa.String(), sa.ForeignKey('quotes.id'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_quote_history_quote_id', 'quote_history', ['quote_id'])
    _history_indexes('quote_history')

    op.create_table(
        'order_history',
        *_history_columns(),
        sa.Column('order_id', sa.String(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('customer_approved', sa.Boolean(), nullable=True),
        sa.Column('customer_signature', sa.Text(), nullable=True),
        sa.Column('approval_timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_order_history_order_id', 'order_history', ['order_id'])
    _history_indexes('order_history')

    op.create_table(
        'job_history',
        *_history_columns(),
        sa.Column('job_id', sa.String(), sa.ForeignKey('jobs.id'), nullable=False),
        sa.Column('material_changes', sa.JSON(), nullable=True),
        sa.Column('progress_notes', sa.Text(), nullable=True),
        sa.Column('attachments', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_job_history_job_id', 'job_history', ['job_id'])
    _history_indexes('job_history')


def downgrade() -> None:
    for table in ('job_history', 'order_history', 'quote_history', 'documents',
                  'job_materials', 'jobs', 'orders', 'quote_line_items', 'quotes',
                  'company_settings', 'materials', 'customers', 'users'):
        op.drop_table(table)
    for enum in (JOB_STATUS, ORDER_STATUS, QUOTE_STATUS, USER_ROLE):
        enum.drop(op.get_bind(), checkfirst=True)
