"""Database models package."""
from models.database import Base, get_session, init_db, close_db, get_engine
from models.region import Region
from models.pipeline import Pipeline
from models.deal import Deal, LineItem
from models.target import Target
from models.exchange_rate import ExchangeRate
from models.sync_log import SyncLog

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "close_db",
    "get_engine",
    "Region",
    "Pipeline",
    "Deal",
    "LineItem",
    "Target",
    "ExchangeRate",
    "SyncLog",
]
