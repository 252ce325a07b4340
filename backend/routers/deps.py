"""Shared router dependencies."""

from typing import Annotated

from fastapi import Header, HTTPException

from config import get_config


async def verify_token(x_tracker_token: Annotated[str | None, Header()] = None) -> None:
    """Verify authentication token if auth is enabled.

    Args:
        x_tracker_token: Token from request header.

    Raises:
        HTTPException: If auth is enabled and token is invalid.
    """
    config = get_config()
    if config.auth.enabled:
        if not x_tracker_token or x_tracker_token != config.auth.token:
            raise HTTPException(status_code=401, detail="Invalid or missing authentication token")
