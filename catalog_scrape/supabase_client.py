from functools import lru_cache

from supabase import Client, create_client

from .config import get_settings


@lru_cache()
def get_supabase() -> Client:
    settings = get_settings()
    if not settings.database_enabled:
        raise RuntimeError(
            "SUPABASE_URL / SUPABASE_SERVICE_KEY are not set; "
            "the database allow-list source is unavailable."
        )
    url = str(settings.supabase_url)

    if "your-project.supabase.co" in url:
        raise RuntimeError(
            "SUPABASE_URL in .env is still the placeholder (your-project). "
            "Fill in your real project URL and service key."
        )
    return create_client(url, settings.supabase_key)
