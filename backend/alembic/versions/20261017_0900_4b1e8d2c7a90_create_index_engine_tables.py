"""create index engine tables

Revision ID: 4b1e8d2c7a90
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4b1e8d2c7a90'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'historical_prices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('coin_id', sa.String(length=100), nullable=False),
        sa.Column('symbol', sa.String(length=50), nullable=False),
        sa.Column('timestamp', sa.BigInteger(), nullable=False),
        sa.Column('price', sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('coin_id', 'timestamp', name='uq_historical_price_coin_ts')
    )
    op.create_index('ix_historical_prices_coin_ts', 'historical_prices', ['coin_id', 'timestamp'], unique=False)

    op.create_table(
        'token_categories',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('coin_id', sa.String(length=100), nullable=False),
        sa.Column('categories', sa.JSON(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_token_categories_coin_id', 'token_categories', ['coin_id'], unique=True)

    op.create_table(
        'crypto_listings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('token', sa.String(length=50), nullable=False),
        sa.Column('token_name', sa.String(length=50), nullable=False),
        sa.Column('listing_announcement_date', sa.JSON(), nullable=False),
        sa.Column('listing_date', sa.JSON(), nullable=False),
        sa.Column('delisting_announcement_date', sa.JSON(), nullable=True),
        sa.Column('delisting_date', sa.JSON(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_crypto_listings_token', 'crypto_listings', ['token'], unique=True)

    op.create_table(
        'exchange_pairs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('exchange', sa.String(length=20), nullable=False),
        sa.Column('pair', sa.String(length=50), nullable=False),
        sa.Column('quote_asset', sa.String(length=10), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('fetched_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('exchange', 'pair', name='uq_exchange_pair')
    )

    op.create_table(
        'rebalances',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('index_id', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.BigInteger(), nullable=False),
        sa.Column('schema_version', sa.Integer(), nullable=False),
        sa.Column('weights', sa.JSON(), nullable=False),
        sa.Column('prices', sa.JSON(), nullable=False),
        sa.Column('coins', sa.JSON(), nullable=False),
        sa.Column('assets', sa.JSON(), nullable=False),
        sa.Column('nav', sa.Float(), nullable=True),
        sa.Column('deployed', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('index_id', 'timestamp', name='uq_rebalance_index_timestamp')
    )

    op.create_table(
        'daily_prices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('index_id', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('price', sa.Float(), nullable=False),
        sa.Column('quantities', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('index_id', 'date', name='uq_daily_price_index_date')
    )
    op.create_index('ix_daily_prices_index_date', 'daily_prices', ['index_id', 'date'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_daily_prices_index_date', table_name='daily_prices')
    op.drop_table('daily_prices')
    op.drop_table('rebalances')
    op.drop_table('exchange_pairs')
    op.drop_index('ix_crypto_listings_token', table_name='crypto_listings')
    op.drop_table('crypto_listings')
    op.drop_index('ix_token_categories_coin_id', table_name='token_categories')
    op.drop_table('token_categories')
    op.drop_index('ix_historical_prices_coin_ts', table_name='historical_prices')
    op.drop_table('historical_prices')
