import logging
from typing import Optional

from supabase import create_client, Client

from aaronos.config import Settings

logger = logging.getLogger(__name__)


def create_supabase(settings: Settings) -> Optional[Client]:
    """
    Create a Supabase client from settings.
    Returns None when Supabase is not configured.
    """
    if not settings.supabase_url:
        logger.warning("SUPABASE_URL not set. Supabase features will be disabled.")
        return None

    if not settings.supabase_key:
        logger.warning("No Supabase key found. Supabase features will be disabled.")
        return None

    return create_client(settings.supabase_url, settings.supabase_key)
