"""Add counting tables

Revision ID: 20261019_counting
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20261019_counting'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Directory (read-only for the counting service)
    op.create_table(
        'shops',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('kind', sa.String(30), nullable=False, server_default='boutique'),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        'shop_users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False),
        sa.Column('login', sa.String(100), nullable=False),
        sa.Column('display_name', sa.String(200), nullable=False),
        sa.Column('is_admin', sa.Boolean, server_default=sa.false()),
        sa.Column('disabled', sa.Boolean, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('shop_id', 'display_name', name='uq_shop_users_display_name'),
    )
    op.create_index('idx_shop_users_shop', 'shop_users', ['shop_id'])

    op.create_table(
        'zones',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False),
        sa.Column('code', sa.String(20), nullable=False),
        sa.Column('label', sa.String(200), nullable=False),
        sa.Column('disabled', sa.Boolean, server_default=sa.false()),
        sa.UniqueConstraint('shop_id', 'code', name='uq_zones_shop_code'),
    )
    op.create_index('idx_zones_shop', 'zones', ['shop_id'])

    op.create_table(
        'products',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False),
        sa.Column('sku', sa.String(32), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('ean', sa.String(64)),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('idx_products_shop_ean', 'products', ['shop_id', 'ean'])
    op.create_index('idx_products_shop_sku', 'products', ['shop_id', 'sku'])

    # Inventory Sessions
    op.create_table(
        'inventory_sessions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('started_at', sa.DateTime, nullable=False),
        sa.Column('completed_at', sa.DateTime),
    )
    op.create_index('idx_isess_shop', 'inventory_sessions', ['shop_id', 'started_at'])
    op.create_index(
        'uq_inventory_sessions_open_shop', 'inventory_sessions', ['shop_id'],
        unique=True,
        postgresql_where=sa.text('completed_at IS NULL'),
    )

    # Counting Runs
    op.create_table(
        'counting_runs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('session_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('inventory_sessions.id'), nullable=False),
        sa.Column('zone_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('zones.id'), nullable=False),
        sa.Column('count_type', sa.SmallInteger, nullable=False),
        sa.Column('owner_user_id', postgresql.UUID(as_uuid=True)),
        sa.Column('operator_display_name', sa.String(200)),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('started_at', sa.DateTime, nullable=False),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('closed_at', sa.DateTime),
        sa.CheckConstraint('count_type BETWEEN 1 AND 3', name='ck_counting_runs_count_type'),
    )
    op.create_index('idx_cr_session_zone', 'counting_runs', ['session_id', 'zone_id'])
    op.create_index('idx_cr_zone_type_status', 'counting_runs', ['zone_id', 'count_type', 'status'])
    # One open run per (zone, count type)
    op.create_index(
        'uq_counting_runs_open_slot', 'counting_runs', ['zone_id', 'count_type'],
        unique=True,
        postgresql_where=sa.text("status = 'open'"),
    )

    # Count Lines
    op.create_table(
        'count_lines',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('run_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('counting_runs.id'), nullable=False),
        sa.Column('product_code', sa.String(64), nullable=False),
        sa.Column('product_id', postgresql.UUID(as_uuid=True)),
        sa.Column('sku', sa.String(32), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('ean', sa.String(64)),
        sa.Column('quantity', sa.Numeric(15, 3), nullable=False),
        sa.Column('is_manual', sa.Boolean, server_default=sa.false()),
        sa.Column('counted_at', sa.DateTime, nullable=False),
        sa.CheckConstraint('quantity >= 0', name='ck_count_lines_quantity'),
    )
    op.create_index('idx_cl_run', 'count_lines', ['run_id'])
    op.create_index('idx_cl_run_code', 'count_lines', ['run_id', 'product_code'], unique=True)

    # Count Conflicts (projection)
    op.create_table(
        'count_conflicts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('session_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('inventory_sessions.id'), nullable=False),
        sa.Column('zone_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('zones.id'), nullable=False),
        sa.Column('product_code', sa.String(64), nullable=False),
        sa.Column('quantities', postgresql.JSONB, nullable=False),
        sa.Column('sample_variance', sa.Float),
        sa.Column('projection_version', sa.SmallInteger, nullable=False, server_default='1'),
        sa.Column('computed_at', sa.DateTime, nullable=False),
    )
    op.create_index('idx_cc_session_zone', 'count_conflicts', ['session_id', 'zone_id'])

    # Audit Logs
    op.create_table(
        'audit_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('action', sa.String(80), nullable=False),
        sa.Column('actor', sa.String(200)),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('details', postgresql.JSONB),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('count_conflicts')
    op.drop_table('count_lines')
    op.drop_table('counting_runs')
    op.drop_table('inventory_sessions')
    op.drop_table('products')
    op.drop_table('zones')
    op.drop_table('shop_users')
    op.drop_table('shops')
