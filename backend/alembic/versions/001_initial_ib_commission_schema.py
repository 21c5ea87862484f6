"""initial IB commission schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_users_id'), 'users', ['id'])
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    op.create_table(
        'partners',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('referral_code', sa.String(16), nullable=True),
        sa.Column('referred_by_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.Enum('PENDING', 'APPROVED', 'REJECTED', 'BANNED', name='partnerstatus'),
                  nullable=False),
        sa.Column('default_usd_per_lot', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('default_spread_share_percent', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('commission_computed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['referred_by_id'], ['partners.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_partners_id'), 'partners', ['id'])
    op.create_index(op.f('ix_partners_user_id'), 'partners', ['user_id'])
    op.create_index(op.f('ix_partners_email'), 'partners', ['email'])
    op.create_index(op.f('ix_partners_referral_code'), 'partners', ['referral_code'], unique=True)
    op.create_index(op.f('ix_partners_referred_by_id'), 'partners', ['referred_by_id'])
    op.create_index(op.f('ix_partners_status'), 'partners', ['status'])

    op.create_table(
        'group_assignments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('partner_id', sa.Integer(), nullable=False),
        sa.Column('group_id', sa.String(255), nullable=False),
        sa.Column('group_name', sa.String(255), nullable=True),
        sa.Column('structure_name', sa.String(255), nullable=True),
        sa.Column('usd_per_lot', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('spread_share_percent', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['partner_id'], ['partners.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_group_assignments_id'), 'group_assignments', ['id'])
    op.create_index(op.f('ix_group_assignments_partner_id'), 'group_assignments', ['partner_id'])

    op.create_table(
        'trading_accounts',
        sa.Column('account_id', sa.String(32), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('password', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('account_id'),
    )
    op.create_index(op.f('ix_trading_accounts_user_id'), 'trading_accounts', ['user_id'])

    op.create_table(
        'referral_edges',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('partner_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('source', sa.String(32), nullable=True),
        sa.Column('linked_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['partner_id'], ['partners.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_referral_edges_id'), 'referral_edges', ['id'])
    op.create_index(op.f('ix_referral_edges_user_id'), 'referral_edges', ['user_id'])
    op.create_index(op.f('ix_referral_edges_partner_id'), 'referral_edges', ['partner_id'])
    op.create_index(op.f('ix_referral_edges_status'), 'referral_edges', ['status'])
    op.create_index('idx_referral_edge_partner_status', 'referral_edges', ['partner_id', 'status'])
    op.create_index('idx_referral_edge_user_status', 'referral_edges', ['user_id', 'status'])

    op.create_table(
        'referral_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('edge_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('from_partner_id', sa.Integer(), nullable=True),
        sa.Column('to_partner_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('moved_by', sa.String(255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['edge_id'], ['referral_edges.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_referral_history_id'), 'referral_history', ['id'])
    op.create_index(op.f('ix_referral_history_user_id'), 'referral_history', ['user_id'])
    op.create_index(op.f('ix_referral_history_created_at'), 'referral_history', ['created_at'])

    op.create_table(
        'trade_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.String(32), nullable=False),
        sa.Column('external_id', sa.String(64), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('partner_id', sa.Integer(), nullable=True),
        sa.Column('symbol', sa.String(32), nullable=False),
        sa.Column('direction', sa.String(8), nullable=False),
        sa.Column('volume_lots', sa.Numeric(15, 4), nullable=False),
        sa.Column('open_price', sa.Numeric(18, 6), nullable=True),
        sa.Column('close_price', sa.Numeric(18, 6), nullable=True),
        sa.Column('profit', sa.Numeric(15, 2), nullable=True),
        sa.Column('take_profit', sa.Numeric(18, 6), nullable=True),
        sa.Column('stop_loss', sa.Numeric(18, 6), nullable=True),
        sa.Column('close_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('group_id', sa.String(255), nullable=True),
        sa.Column('commission', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('synced_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'external_id', name='uq_trade_record_account_external'),
    )
    op.create_index(op.f('ix_trade_records_id'), 'trade_records', ['id'])
    op.create_index(op.f('ix_trade_records_account_id'), 'trade_records', ['account_id'])
    op.create_index(op.f('ix_trade_records_user_id'), 'trade_records', ['user_id'])
    op.create_index(op.f('ix_trade_records_partner_id'), 'trade_records', ['partner_id'])
    op.create_index(op.f('ix_trade_records_symbol'), 'trade_records', ['symbol'])
    op.create_index(op.f('ix_trade_records_group_id'), 'trade_records', ['group_id'])
    op.create_index('idx_trade_record_user_synced', 'trade_records', ['user_id', 'synced_at'])

    op.create_table(
        'commission_snapshots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('partner_id', sa.Integer(), nullable=False),
        sa.Column('referred_user_id', sa.Integer(), nullable=False),
        sa.Column('fixed_commission', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('spread_commission', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('total_commission', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('total_trades', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_lots', sa.Numeric(15, 4), nullable=False, server_default='0'),
        sa.Column('computed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('partner_id', 'referred_user_id', name='uq_commission_snapshot_partner_user'),
    )
    op.create_index(op.f('ix_commission_snapshots_id'), 'commission_snapshots', ['id'])
    op.create_index(op.f('ix_commission_snapshots_partner_id'), 'commission_snapshots', ['partner_id'])
    op.create_index(op.f('ix_commission_snapshots_referred_user_id'), 'commission_snapshots', ['referred_user_id'])
    op.create_index(op.f('ix_commission_snapshots_computed_at'), 'commission_snapshots', ['computed_at'])


def downgrade():
    op.drop_table('commission_snapshots')
    op.drop_table('trade_records')
    op.drop_table('referral_history')
    op.drop_table('referral_edges')
    op.drop_table('trading_accounts')
    op.drop_table('group_assignments')
    op.drop_table('partners')
    op.drop_table('users')
    sa.Enum(name='partnerstatus').drop(op.get_bind(), checkfirst=True)
