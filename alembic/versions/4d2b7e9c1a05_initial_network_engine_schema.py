"""initial_network_engine_schema

Revision ID: 4d2b7e9c1a05
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '4d2b7e9c1a05'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def _money(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(14, 2), nullable=nullable)


def upgrade() -> None:
    # --- Access control ---
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_superadmin', sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'roles',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(50), nullable=False, unique=True),
        sa.Column('display_name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_system', sa.Boolean(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        'permissions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('codename', sa.String(100), nullable=False, unique=True),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('resource', sa.String(50), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_permissions_resource', 'permissions', ['resource'])

    op.create_table(
        'user_roles',
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('role_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('roles.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('assigned_by', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
    )

    op.create_table(
        'role_permissions',
        sa.Column('role_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('roles.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('permission_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('permissions.id', ondelete='CASCADE'), primary_key=True),
    )

    op.create_table(
        'audit_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('resource_type', sa.String(50), nullable=False),
        sa.Column('resource_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('old_values', postgresql.JSONB(), nullable=True),
        sa.Column('new_values', postgresql.JSONB(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])

    # --- Affiliate directory ---
    op.create_table(
        'affiliates',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('affiliate_code', sa.String(20), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('sponsor_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('affiliates.id'), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('pending', 'active', 'inactive', 'suspended', 'cancelled')", name='chk_affiliate_status'),
        sa.CheckConstraint('sponsor_id IS DISTINCT FROM id', name='chk_no_self_sponsor'),
    )
    op.create_index('ix_affiliates_affiliate_code', 'affiliates', ['affiliate_code'], unique=True)
    op.create_index('ix_affiliates_sponsor_id', 'affiliates', ['sponsor_id'])
    op.create_index('ix_affiliates_status', 'affiliates', ['status'])

    # --- Binary tree ---
    op.create_table(
        'network_nodes',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('affiliate_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('affiliates.id'), nullable=False, unique=True),
        sa.Column('sponsor_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('affiliates.id'), nullable=True),
        sa.Column('parent_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('network_nodes.id'), nullable=True),
        sa.Column('leg', sa.String(5), nullable=True),
        sa.Column('left_child_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('network_nodes.id'), nullable=True),
        sa.Column('right_child_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('network_nodes.id'), nullable=True),
        sa.Column('depth', sa.Integer(), nullable=False),
        _money('personal_volume'),
        _money('left_leg_volume'),
        _money('right_leg_volume'),
        _money('left_flushed_volume'),
        _money('right_flushed_volume'),
        sa.Column('flushed_through', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('parent_id', 'leg', name='uq_network_nodes_parent_leg'),
        sa.CheckConstraint("leg IN ('left', 'right')", name='chk_network_node_leg'),
        sa.CheckConstraint('parent_id IS DISTINCT FROM id', name='chk_no_self_parent'),
        sa.CheckConstraint('(parent_id IS NULL) = (leg IS NULL)', name='chk_parent_leg_together'),
    )
    op.create_index('ix_network_nodes_sponsor_id', 'network_nodes', ['sponsor_id'])
    op.create_index('ix_network_nodes_parent_id', 'network_nodes', ['parent_id'])

    op.create_table(
        'volume_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('event_id', sa.String(100), nullable=False, unique=True),
        sa.Column('node_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('network_nodes.id'), nullable=False),
        sa.Column('affiliate_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('affiliates.id'), nullable=False),
        _money('amount'),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('amount > 0', name='chk_volume_event_amount'),
    )
    op.create_index('ix_volume_events_node_id', 'volume_events', ['node_id'])
    op.create_index('ix_volume_events_occurred_at', 'volume_events', ['occurred_at'])

    op.create_table(
        'carryover_entries',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('node_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('network_nodes.id'), nullable=False),
        sa.Column('leg', sa.String(5), nullable=False),
        _money('amount'),
        sa.Column('cycles_remaining', sa.Integer(), nullable=False),
        sa.Column('last_cycle_id', sa.String(20), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('node_id', 'leg', name='uq_carryover_node_leg'),
        sa.CheckConstraint("leg IN ('left', 'right')", name='chk_carryover_leg'),
        sa.CheckConstraint('amount > 0', name='chk_carryover_amount'),
        sa.CheckConstraint('cycles_remaining > 0', name='chk_carryover_cycles'),
    )
    op.create_index('ix_carryover_entries_node_id', 'carryover_entries', ['node_id'])

    # --- Commission cycles ---
    op.create_table(
        'commission_cycles',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('cycle_id', sa.String(20), nullable=False, unique=True),
        sa.Column('cutoff_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('percentage', sa.Numeric(5, 2), nullable=False),
        _money('cap_per_cycle'),
        sa.Column('max_carryover_cycles', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(25), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('nodes_total', sa.Integer(), nullable=False),
        sa.Column('nodes_processed', sa.Integer(), nullable=False),
        sa.Column('nodes_failed', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('running', 'completed', 'completed_with_errors')",
            name='chk_commission_cycle_status',
        ),
    )

    op.create_table(
        'cycle_snapshots',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('cycle_id', sa.String(20), sa.ForeignKey('commission_cycles.cycle_id'), nullable=False),
        sa.Column('node_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('network_nodes.id'), nullable=False),
        sa.Column('affiliate_id', postgresql.UUID(as_uuid=True), nullable=False),
        _money('left_total'),
        _money('right_total'),
        _money('left_fresh'),
        _money('right_fresh'),
        _money('left_carry'),
        _money('right_carry'),
        sa.Column('left_carry_cycles', sa.Integer(), nullable=False),
        sa.Column('right_carry_cycles', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('cycle_id', 'node_id', name='uq_cycle_snapshot_node'),
    )
    op.create_index('ix_cycle_snapshots_cycle_id', 'cycle_snapshots', ['cycle_id'])

    op.create_table(
        'commission_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('node_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('network_nodes.id'), nullable=False),
        sa.Column('affiliate_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('cycle_id', sa.String(20), sa.ForeignKey('commission_cycles.cycle_id'), nullable=False),
        _money('left_volume'),
        _money('right_volume'),
        _money('matched_volume'),
        sa.Column('percentage', sa.Numeric(5, 2), nullable=False),
        _money('commission_amount'),
        _money('capped_amount'),
        _money('carryover_left'),
        _money('carryover_right'),
        _money('forfeited_volume'),
        sa.Column('computed_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('node_id', 'cycle_id', name='uq_commission_node_cycle'),
    )
    op.create_index('ix_commission_records_node_id', 'commission_records', ['node_id'])
    op.create_index('ix_commission_records_cycle_id', 'commission_records', ['cycle_id'])

    op.create_table(
        'commission_adjustments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('node_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('network_nodes.id'), nullable=False),
        sa.Column('cycle_id', sa.String(20), sa.ForeignKey('commission_cycles.cycle_id'), nullable=False),
        _money('amount'),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('created_by', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_commission_adjustments_node_id', 'commission_adjustments', ['node_id'])

    op.create_table(
        'payout_instructions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('node_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('network_nodes.id'), nullable=False),
        sa.Column('affiliate_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('cycle_id', sa.String(20), nullable=False),
        sa.Column('adjustment_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('commission_adjustments.id'), nullable=True, unique=True),
        _money('amount'),
        sa.Column('computed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(10), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("status IN ('pending', 'sent', 'failed')", name='chk_payout_status'),
    )
    op.create_index('ix_payout_instructions_affiliate_id', 'payout_instructions', ['affiliate_id'])
    op.create_index('ix_payout_instructions_status', 'payout_instructions', ['status'])
    op.create_index(
        'uq_payout_node_cycle',
        'payout_instructions',
        ['node_id', 'cycle_id'],
        unique=True,
        postgresql_where=sa.text('adjustment_id IS NULL'),
    )


def downgrade() -> None:
    op.drop_table('payout_instructions')
    op.drop_table('commission_adjustments')
    op.drop_table('commission_records')
    op.drop_table('cycle_snapshots')
    op.drop_table('commission_cycles')
    op.drop_table('carryover_entries')
    op.drop_table('volume_events')
    op.drop_table('network_nodes')
    op.drop_table('affiliates')
    op.drop_table('audit_logs')
    op.drop_table('role_permissions')
    op.drop_table('user_roles')
    op.drop_table('permissions')
    op.drop_table('roles')
    op.drop_table('users')
