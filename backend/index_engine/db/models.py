from sqlalchemy import (
    Column, String, Integer, Float, BigInteger, Boolean, Date, DateTime, UniqueConstraint, Index, JSON,
)
from datetime import datetime
from index_engine.db.database import Base


class HistoricalPrice(Base):
    """Daily USD price per provider asset id (the Price Store)."""
    __tablename__ = "historical_prices"

    id = Column(Integer, primary_key=True)
    coin_id = Column(String(100), nullable=False)
    symbol = Column(String(50), nullable=False)
    timestamp = Column(BigInteger, nullable=False)  # unix seconds
    price = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint('coin_id', 'timestamp', name='uq_historical_price_coin_ts'),
        Index('ix_historical_prices_coin_ts', 'coin_id', 'timestamp'),
    )


class TokenCategory(Base):
    """Cached provider category tags for an asset."""
    __tablename__ = "token_categories"

    id = Column(Integer, primary_key=True)
    coin_id = Column(String(100), unique=True, index=True, nullable=False)
    categories = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CryptoListing(Base):
    """Listing / delisting dates per trading pair, keyed by exchange inside each JSON map."""
    __tablename__ = "crypto_listings"

    id = Column(Integer, primary_key=True)
    token = Column(String(50), unique=True, index=True, nullable=False)  # pair, e.g. BTCUSDC
    token_name = Column(String(50), nullable=False)  # base symbol
    listing_announcement_date = Column(JSON, nullable=False, default=dict)
    listing_date = Column(JSON, nullable=False, default=dict)
    delisting_announcement_date = Column(JSON, nullable=True)
    delisting_date = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ExchangePair(Base):
    """Tradable spot pairs of the primary exchange (the whitelist)."""
    __tablename__ = "exchange_pairs"

    id = Column(Integer, primary_key=True)
    exchange = Column(String(20), nullable=False)
    pair = Column(String(50), nullable=False)
    quote_asset = Column(String(10), nullable=True)
    status = Column(String(20), nullable=False, default="TRADING")
    fetched_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('exchange', 'pair', name='uq_exchange_pair'),
    )


class Rebalance(Base):
    """Rebalance snapshot of one index at one timestamp."""
    __tablename__ = "rebalances"

    id = Column(Integer, primary_key=True)
    index_id = Column(Integer, nullable=False)
    timestamp = Column(BigInteger, nullable=False)
    schema_version = Column(Integer, nullable=False, default=1)
    weights = Column(JSON, nullable=False)  # [[pair, bps], ...]
    prices = Column(JSON, nullable=False)  # {pair: price}
    coins = Column(JSON, nullable=False)  # {asset_id: bps}
    assets = Column(JSON, nullable=False)  # {pair: asset_id}
    nav = Column(Float, nullable=True)
    deployed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('index_id', 'timestamp', name='uq_rebalance_index_timestamp'),
    )


class DailyPrice(Base):
    """Reconstructed daily NAV per index."""
    __tablename__ = "daily_prices"

    id = Column(Integer, primary_key=True)
    index_id = Column(Integer, nullable=False)
    date = Column(Date, nullable=False)
    price = Column(Float, nullable=False)
    quantities = Column(JSON, nullable=True)  # {asset_id: quantity}
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('index_id', 'date', name='uq_daily_price_index_date'),
        Index('ix_daily_prices_index_date', 'index_id', 'date'),
    )
