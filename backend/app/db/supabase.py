"""
Supabase client for the run log tables (service role key).
"""
import os
from functools import lru_cache

from supabase import Client, create_client

from app.services.errors import ConfigurationError


def supabase_configured() -> bool:
    return bool(os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_SERVICE_ROLE_KEY"))


@lru_cache(maxsize=1)
def get_supabase_client() -> Client:
    """Create (once) the server-side Supabase client."""
    supabase_url = os.getenv("SUPABASE_URL")
    supabase_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

    if not supabase_url:
        raise ConfigurationError("SUPABASE_URL environment variable is required")
    if not supabase_key:
        raise ConfigurationError("SUPABASE_SERVICE_ROLE_KEY environment variable is required")

    try:
        return create_client(supabase_url, supabase_key)
    except Exception as e:
        raise ConfigurationError(f"Failed to create Supabase client: {e}") from e
