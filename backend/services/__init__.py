"""Services package."""
from services.exchange_rates import ExchangeRateService
from services.hubspot_sync import SyncOptions, SyncResult, sync_all_regions, sync_deals_from_hubspot

__all__ = [
    "ExchangeRateService",
    "SyncOptions",
    "SyncResult",
    "sync_all_regions",
    "sync_deals_from_hubspot",
]
