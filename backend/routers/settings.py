"""
Settings router: import and mapping settings.
"""
import logging

from fastapi import APIRouter, HTTPException

from config import ImportSettings, clear_settings_cache, get_settings, save_settings, set_log_level
from storage import reset_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["Settings"])


@router.get("")
async def get_current_settings():
    """Get current import settings."""
    return get_settings().model_dump()


@router.post("")
async def update_settings(request: ImportSettings):
    """Replace import settings. Takes effect on the next sync."""
    try:
        save_settings(request)
    except OSError as e:
        logger.error("[SETTINGS] Failed to save settings: %s", e)
        raise HTTPException(status_code=500, detail="Failed to save settings")
    clear_settings_cache()
    reset_storage()
    set_log_level(request.backend_log_level)
    return {"status": "saved", "settings": get_settings().model_dump()}
