"""initial bolt tables

Revision ID: 4b1e0c7a9d21
Revises:
Create Date: 2026-10-19 10:12:41.518203

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '4b1e0c7a9d21'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'bolt_users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('telegram_id', sa.BigInteger(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=True),
        sa.Column('first_name', sa.String(length=128), nullable=True),
        sa.Column('last_name', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('token_balance', sa.BigInteger(), nullable=False),
        sa.Column('usdt_balance', sa.Numeric(precision=36, scale=18), nullable=False),
        sa.Column('ton_balance', sa.Numeric(precision=20, scale=9), nullable=False),
        sa.Column('mining_power', sa.Integer(), nullable=False),
        sa.Column('mining_duration_hours', sa.Integer(), nullable=False),
        sa.Column('bot_blocked', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('bolt_users', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_bolt_users_telegram_id'), ['telegram_id'], unique=True)

    op.create_table(
        'mining_sessions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('tokens_per_hour', sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column('mining_power', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('total_mined', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['bolt_users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('mining_sessions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_mining_sessions_user_id'), ['user_id'], unique=False)
        # 每个用户最多一个进行中的 session
        batch_op.create_index('uix_one_active_session_per_user', ['user_id'], unique=True,
                              postgresql_where=sa.text('is_active'),
                              sqlite_where=sa.text('is_active = 1'))

    op.create_table(
        'payment_records',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('rail', sa.Enum('ton', 'stars', name='paymentrailenum'), nullable=False),
        sa.Column('product_type', sa.String(length=32), nullable=False),
        sa.Column('destination_address', sa.String(length=128), nullable=False),
        sa.Column('amount_expected', sa.Numeric(precision=20, scale=9), nullable=False),
        sa.Column('reward_amount', sa.BigInteger(), nullable=True),
        sa.Column('status', sa.Enum('pending', 'confirmed', 'failed', name='paymentstatusenum'), nullable=False),
        sa.Column('tx_hash', sa.String(length=128), nullable=True),
        sa.Column('verified_amount', sa.Numeric(precision=20, scale=9), nullable=True),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['bolt_users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tx_hash')
    )
    with op.batch_alter_table('payment_records', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_records_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_records_destination_address'), ['destination_address'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_records_status'), ['status'], unique=False)

    op.create_table(
        'balance_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('change_type', sa.String(length=60), nullable=False),
        sa.Column('currency', sa.String(length=16), nullable=False),
        sa.Column('change_amount', sa.Numeric(precision=36, scale=18), nullable=False),
        sa.Column('reference_id', sa.String(length=64), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['bolt_users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('balance_history', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_balance_history_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_balance_history_reference_id'), ['reference_id'], unique=False)

    op.create_table(
        'reconciliation_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('source_type', sa.String(length=32), nullable=False),
        sa.Column('source_id', sa.String(length=64), nullable=False),
        sa.Column('token_amount', sa.BigInteger(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['bolt_users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('source_type', 'source_id', name='uix_reconciliation_source')
    )
    with op.batch_alter_table('reconciliation_items', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_reconciliation_items_user_id'), ['user_id'], unique=False)


def downgrade():
    with op.batch_alter_table('reconciliation_items', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_reconciliation_items_user_id'))
    op.drop_table('reconciliation_items')

    with op.batch_alter_table('balance_history', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_balance_history_reference_id'))
        batch_op.drop_index(batch_op.f('ix_balance_history_user_id'))
    op.drop_table('balance_history')

    with op.batch_alter_table('payment_records', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_payment_records_status'))
        batch_op.drop_index(batch_op.f('ix_payment_records_destination_address'))
        batch_op.drop_index(batch_op.f('ix_payment_records_user_id'))
    op.drop_table('payment_records')

    with op.batch_alter_table('mining_sessions', schema=None) as batch_op:
        batch_op.drop_index('uix_one_active_session_per_user')
        batch_op.drop_index(batch_op.f('ix_mining_sessions_user_id'))
    op.drop_table('mining_sessions')

    with op.batch_alter_table('bolt_users', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_bolt_users_telegram_id'))
    op.drop_table('bolt_users')
