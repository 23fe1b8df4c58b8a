"""Initial migration - players, machines, cashout, purchases and config

Revision ID: 001
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, comment='Row creation time (UTC)'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, comment='Last modification time (UTC)'),
    ]


def upgrade() -> None:
    # Create player_states table
    op.create_table('player_states',
        sa.Column('player_id', sa.String(length=64), nullable=False, comment='Opaque player identifier issued by the auth layer'),
        sa.Column('wallet_address', sa.String(length=64), nullable=True, comment='Payout wallet address (0x EVM format)'),
        sa.Column('oil_balance', sa.Float(), nullable=False, comment='Spendable oil'),
        sa.Column('diamond_balance', sa.Integer(), nullable=False, comment='Diamonds available for cashout'),
        sa.Column('daily_diamond_count', sa.Integer(), nullable=False, comment='Diamonds credited in the current 24h window'),
        sa.Column('daily_diamond_reset_at', sa.DateTime(), nullable=False, comment='Start of the current 24h diamond window'),
        sa.Column('purchased_slots', sa.Integer(), nullable=False, comment='Extra machine slots bought on top of the base allowance'),
        sa.Column('last_daily_claim_at', sa.DateTime(), nullable=True, comment='Last time the daily oil reward was claimed'),
        *_timestamps(),
        sa.CheckConstraint('oil_balance >= 0', name='ck_player_oil_non_negative'),
        sa.CheckConstraint('diamond_balance >= 0', name='ck_player_diamonds_non_negative'),
        sa.PrimaryKeyConstraint('player_id')
    )
    op.create_index('idx_player_states_wallet', 'player_states', ['wallet_address'])

    # Create player_minerals table
    op.create_table('player_minerals',
        sa.Column('player_id', sa.String(length=64), nullable=False, comment='Owning player'),
        sa.Column('mineral_id', sa.String(length=32), nullable=False, comment='Mineral key from the mineral table'),
        sa.Column('amount', sa.Integer(), nullable=False, comment='Units held'),
        sa.CheckConstraint('amount >= 0', name='ck_player_mineral_non_negative'),
        sa.ForeignKeyConstraint(['player_id'], ['player_states.player_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('player_id', 'mineral_id')
    )

    # Create machines table
    op.create_table('machines',
        sa.Column('id', sa.String(length=64), nullable=False, comment='Machine id; equals the purchase id for bought machines'),
        sa.Column('player_id', sa.String(length=64), nullable=False, comment='Owning player'),
        sa.Column('machine_type', sa.String(length=32), nullable=False, comment='Tier key (mini, light, heavy, mega)'),
        sa.Column('level', sa.Integer(), nullable=False, comment='Upgrade level, 1..max_level'),
        sa.Column('fuel_oil', sa.Float(), nullable=False, comment='Oil currently in the tank'),
        sa.Column('is_active', sa.Boolean(), nullable=False, comment='Whether the machine is mining'),
        sa.Column('last_processed_at', sa.DateTime(), nullable=True, comment='Accrual checkpoint; only advanced by fuelled time'),
        sa.Column('action_remainder', sa.Float(), nullable=False, comment='Fractional mining action carried to the next accrual'),
        *_timestamps(),
        sa.CheckConstraint('fuel_oil >= 0', name='ck_machine_fuel_non_negative'),
        sa.CheckConstraint('level >= 1', name='ck_machine_level_positive'),
        sa.ForeignKeyConstraint(['player_id'], ['player_states.player_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_machines_player', 'machines', ['player_id'])
    op.create_index('idx_machines_active', 'machines', ['player_id', 'is_active'])

    # Create cashout_rounds table
    op.create_table('cashout_rounds',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('round_date', sa.Date(), nullable=False, comment='UTC date the round was opened'),
        sa.Column('status', sa.String(length=16), nullable=False, comment='open, closed or paid'),
        sa.Column('total_diamonds', sa.Integer(), nullable=False, comment='Diamonds submitted to this round'),
        sa.Column('revenue_window_start', sa.DateTime(), nullable=False, comment='Inclusive start of the revenue window'),
        sa.Column('revenue_window_end', sa.DateTime(), nullable=False, comment='Exclusive end of the revenue window'),
        sa.Column('revenue_wld', sa.Float(), nullable=False, comment='Confirmed purchase revenue observed in the window'),
        sa.Column('payout_pool_wld', sa.Float(), nullable=False, comment='Gross payout pool before tax'),
        sa.Column('pool_manual_override', sa.Boolean(), nullable=False, comment='Pool was set by an operator and is not recomputed'),
        sa.Column('tax_rate', sa.Float(), nullable=True, comment='Tax fraction applied at finalization'),
        sa.Column('net_pool_wld', sa.Float(), nullable=True, comment='Pool distributed to recipients after tax'),
        sa.Column('signaled_at', sa.DateTime(), nullable=True, comment='Set when a submission asks the sweep to finalize early'),
        sa.Column('finalized_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('total_diamonds >= 0', name='ck_round_diamonds_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_cashout_rounds_date_status', 'cashout_rounds', ['round_date', 'status'])
    op.create_index('idx_cashout_rounds_status', 'cashout_rounds', ['status'])

    # Create cashout_requests table
    op.create_table('cashout_requests',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('player_id', sa.String(length=64), nullable=False),
        sa.Column('round_id', sa.Integer(), nullable=False),
        sa.Column('diamonds_submitted', sa.Integer(), nullable=False, comment='Diamonds debited for this request'),
        sa.Column('status', sa.String(length=16), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('diamonds_submitted > 0', name='ck_request_diamonds_positive'),
        sa.ForeignKeyConstraint(['player_id'], ['player_states.player_id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['round_id'], ['cashout_rounds.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_cashout_requests_round_status', 'cashout_requests', ['round_id', 'status'])
    op.create_index('idx_cashout_requests_player', 'cashout_requests', ['player_id', 'created_at'])

    # Create cashout_payouts table
    op.create_table('cashout_payouts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('round_id', sa.Integer(), nullable=False),
        sa.Column('player_id', sa.String(length=64), nullable=False),
        sa.Column('diamonds_burned', sa.Integer(), nullable=False, comment='Diamonds this payout settles'),
        sa.Column('amount_wld', sa.Float(), nullable=False, comment='Net share of the pool'),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('attempt_count', sa.Integer(), nullable=False, comment='Executions claimed so far'),
        sa.Column('tx_reference', sa.String(length=128), nullable=True, comment='Payment rail transaction reference'),
        sa.Column('last_error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['player_id'], ['player_states.player_id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['round_id'], ['cashout_rounds.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('round_id', 'player_id', name='uq_cashout_payout_round_player')
    )
    op.create_index('idx_cashout_payouts_round_status', 'cashout_payouts', ['round_id', 'status'])
    op.create_index('idx_cashout_payouts_status_created', 'cashout_payouts', ['status', 'created_at'])

    # Create purchases table
    op.create_table('purchases',
        sa.Column('id', sa.String(length=36), nullable=False, comment='Purchase id; granted machines reuse it as their id'),
        sa.Column('player_id', sa.String(length=64), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False, comment='oil, machine or slot'),
        sa.Column('reference', sa.String(length=64), nullable=False, comment='Payment reference shared with the payment app'),
        sa.Column('token', sa.String(length=8), nullable=False),
        sa.Column('amount_token', sa.Float(), nullable=False, comment='Amount charged in the payment token'),
        sa.Column('amount_wld', sa.Float(), nullable=False, comment='Charge expressed in WLD; feeds round revenue'),
        sa.Column('amount_oil', sa.Float(), nullable=True),
        sa.Column('machine_type', sa.String(length=32), nullable=True),
        sa.Column('slots_purchased', sa.Integer(), nullable=True),
        sa.Column('to_address', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('transaction_id', sa.String(length=128), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['player_id'], ['player_states.player_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reference')
    )
    op.create_index('idx_purchases_player_status', 'purchases', ['player_id', 'status', 'created_at'])
    op.create_index('idx_purchases_status_confirmed', 'purchases', ['status', 'confirmed_at'])

    # Create configuration tables
    op.create_table('game_config',
        sa.Column('key', sa.String(length=32), nullable=False),
        sa.Column('value', sa.JSON(), nullable=False, comment='Base config document'),
        sa.Column('version', sa.Integer(), nullable=False, comment='Incremented on every write'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('key')
    )
    op.create_table('machine_tiers',
        sa.Column('machine_type', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('cost_oil', sa.Float(), nullable=False),
        sa.Column('cost_wld', sa.Float(), nullable=False),
        sa.Column('speed_actions_per_hour', sa.Float(), nullable=False),
        sa.Column('oil_burn_per_hour', sa.Float(), nullable=False),
        sa.Column('tank_capacity', sa.Float(), nullable=False),
        sa.Column('max_level', sa.Integer(), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('machine_type')
    )
    op.create_table('mineral_configs',
        sa.Column('mineral_id', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('drop_rate', sa.Float(), nullable=False),
        sa.Column('oil_value', sa.Float(), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('mineral_id')
    )
    op.create_table('global_game_settings',
        sa.Column('key', sa.String(length=64), nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('key')
    )


def downgrade() -> None:
    op.drop_table('global_game_settings')
    op.drop_table('mineral_configs')
    op.drop_table('machine_tiers')
    op.drop_table('game_config')

    op.drop_index('idx_purchases_status_confirmed', table_name='purchases')
    op.drop_index('idx_purchases_player_status', table_name='purchases')
    op.drop_table('purchases')

    op.drop_index('idx_cashout_payouts_status_created', table_name='cashout_payouts')
    op.drop_index('idx_cashout_payouts_round_status', table_name='cashout_payouts')
    op.drop_table('cashout_payouts')

    op.drop_index('idx_cashout_requests_player', table_name='cashout_requests')
    op.drop_index('idx_cashout_requests_round_status', table_name='cashout_requests')
    op.drop_table('cashout_requests')

    op.drop_index('idx_cashout_rounds_status', table_name='cashout_rounds')
    op.drop_index('idx_cashout_rounds_date_status', table_name='cashout_rounds')
    op.drop_table('cashout_rounds')

    op.drop_index('idx_machines_active', table_name='machines')
    op.drop_index('idx_machines_player', table_name='machines')
    op.drop_table('machines')

    op.drop_table('player_minerals')

    op.drop_index('idx_player_states_wallet', table_name='player_states')
    op.drop_table('player_states')
