import logging
from typing import Optional

from supabase import Client, create_client

from lib.config import Settings, get_settings
from lib.error_handler import AppError

logger = logging.getLogger(__name__)

_client: Optional[Client] = None


def get_supabase_client(settings: Optional[Settings] = None) -> Client:
    """Shared Supabase client, created on first use"""
    global _client
    if _client is not None:
        return _client

    settings = settings or get_settings()
    if not settings.supabase_configured:
        raise AppError("SUPABASE_URL and SUPABASE_KEY must be set for the supabase backend")

    logger.info("Initializing Supabase client...")
    try:
        _client = create_client(settings.supabase_url, settings.supabase_key)
    except Exception as e:
        logger.error(f"Error initializing Supabase client: {str(e)}")
        raise AppError("Failed to initialize database client")
    logger.info("Supabase client initialized successfully")
    return _client


def reset_client() -> None:
    global _client
    _client = None
