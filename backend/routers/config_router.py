"""Configuration API Router for the convocation RFID tracker.

Handles configuration get, update, and reload endpoints.
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ValidationError

from config import TrackerConfig, get_config, reload_config, save_config
from routers.deps import verify_token
from services.tracker import get_tracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/config", tags=["config"])

# (section, field) pairs never returned in clear text
SECRET_FIELDS = (
    ("mqtt", "password"),
    ("auth", "token"),
    ("airtable", "api_key"),
    ("tito", "api_token"),
)


class ConfigUpdateRequest(BaseModel):
    """Request body for configuration update."""

    storage: dict[str, Any] | None = None
    airtable: dict[str, Any] | None = None
    tito: dict[str, Any] | None = None
    cache: dict[str, Any] | None = None
    lifecycle: dict[str, Any] | None = None
    mqtt: dict[str, Any] | None = None
    reader: dict[str, Any] | None = None


class ConfigResponse(BaseModel):
    """Response containing current configuration."""

    ok: bool = True
    config: dict[str, Any]


class ReloadResponse(BaseModel):
    """Response for configuration reload."""

    ok: bool = True
    message: str = "Configuration reloaded"


def mask_secrets(config: TrackerConfig) -> dict[str, Any]:
    """Dump config with secret fields replaced by ``***``."""
    config_dict = config.model_dump()
    for section, field in SECRET_FIELDS:
        if config_dict.get(section, {}).get(field):
            config_dict[section][field] = "***"
    return config_dict


@router.get("", response_model=ConfigResponse)
async def get_current_config(
    _: Annotated[None, Depends(verify_token)],
) -> ConfigResponse:
    """Get current tracker configuration, without secrets."""
    return ConfigResponse(ok=True, config=mask_secrets(get_config()))


@router.put("", response_model=ConfigResponse)
async def update_config(
    request: ConfigUpdateRequest,
    _: Annotated[None, Depends(verify_token)],
) -> ConfigResponse:
    """Update tracker configuration.

    Partial updates are supported - only provided fields will be updated.
    Changes are persisted to the configuration file. Storage and MQTT
    changes take effect on restart.
    """
    config_dict = get_config().model_dump()

    # Merge updates
    for section, values in request.model_dump(exclude_none=True).items():
        config_dict[section].update(values)

    # Validate and save
    try:
        new_config = TrackerConfig.model_validate(config_dict)
    except ValidationError as e:
        logger.error(f"Failed to update configuration: {e}")
        raise HTTPException(status_code=400, detail=f"Invalid configuration: {e}") from e

    save_config(new_config)
    get_tracker().apply_config(new_config)
    logger.info("Configuration updated successfully")

    return ConfigResponse(ok=True, config=mask_secrets(new_config))


@router.post("/reload", response_model=ReloadResponse)
async def reload_config_endpoint(
    _: Annotated[None, Depends(verify_token)],
) -> ReloadResponse:
    """Reload configuration from file.

    Hot-reloads the configuration without restarting the service.
    Note: Some settings may require a full restart to take effect (e.g., storage backend).
    """
    try:
        new_config = reload_config()
    except (OSError, ValueError) as e:
        logger.error(f"Failed to reload configuration: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to reload: {e}") from e

    get_tracker().apply_config(new_config)
    logger.info("Configuration reloaded from file")
    return ReloadResponse(ok=True, message="Configuration reloaded successfully")
