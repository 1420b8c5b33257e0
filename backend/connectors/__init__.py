"""CRM connectors package."""
from connectors.hubspot import HubSpotAPIError, HubSpotClient, create_hubspot_client
from connectors.resolution import HubSpotResolver, build_resolver

__all__ = [
    "HubSpotAPIError",
    "HubSpotClient",
    "create_hubspot_client",
    "HubSpotResolver",
    "build_resolver",
]
