"""
Channel allocation.

smee.io hands out a new channel by redirecting ``/new`` to the channel URL,
so the channel is read from the Location header without following it.
"""

import logging

import httpx

from ssefwd.errors import ChannelError

logger = logging.getLogger(__name__)

NEW_CHANNEL_URL = "https://smee.io/new"


async def create_channel(new_url: str = NEW_CHANNEL_URL, timeout: float = 10.0) -> str:
    """
    Allocate a new source channel.

    Args:
        new_url: Endpoint that redirects to a fresh channel
        timeout: Request timeout in seconds

    Returns:
        The new channel URL

    Raises:
        ChannelError: If the request fails or no Location header is returned
    """
    try:
        async with httpx.AsyncClient(follow_redirects=False, timeout=timeout) as client:
            response = await client.head(new_url)
    except httpx.HTTPError as e:
        raise ChannelError(f"Failed to allocate channel at {new_url}: {e}") from e

    location = response.headers.get("location")
    if not location:
        raise ChannelError(
            f"No Location header from {new_url} (status {response.status_code})"
        )

    logger.info(f"Allocated new channel {location}")
    return location
