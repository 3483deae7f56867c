"""Temporal client factory.

Connects to the Temporal frontend configured in the environment. A local
dev server needs only TEMPORAL_ADDRESS; Temporal Cloud also needs an API key.
"""

import ssl
from typing import Optional

from temporalio.client import Client

from core.config import Settings, get_settings


async def get_temporal_client(settings: Optional[Settings] = None) -> Client:
    """Create and return a Temporal client.

    Reads configuration from settings (environment):
    - TEMPORAL_ADDRESS: Frontend address (e.g., "localhost:7233")
    - TEMPORAL_NAMESPACE: Namespace (e.g., "default")
    - TEMPORAL_API_KEY: API key for Temporal Cloud (optional)

    Returns:
        Connected Temporal client

    Raises:
        ValueError: If no address is configured
    """
    settings = settings or get_settings()
    if not settings.temporal_address:
        raise ValueError("TEMPORAL_ADDRESS environment variable not set")

    if settings.temporal_api_key:
        # Temporal Cloud: TLS with system certificates plus API key
        return await Client.connect(
            target_host=settings.temporal_address,
            namespace=settings.temporal_namespace,
            tls=ssl.create_default_context(),
            api_key=settings.temporal_api_key,
        )

    return await Client.connect(
        target_host=settings.temporal_address,
        namespace=settings.temporal_namespace,
    )
