"""
Lifestyle Blueprint - Supabase Client.

Low-level database access. All queries go through SupabaseStore, which
uses the service client obtained here.
"""

from supabase import Client, create_client

from blueprint.config import settings

# Singleton client instances
_client: Client | None = None
_service_client: Client | None = None


def get_client() -> Client:
    """
    Get the Supabase client (anon key).

    Uses singleton pattern to reuse connection.
    """
    global _client

    if _client is None:
        _client = create_client(
            settings.supabase_url,
            settings.supabase_anon_key,
        )

    return _client


def get_service_client() -> Client:
    """Get the Supabase client with the service role key (server-side writes, auth checks)."""
    global _service_client

    if _service_client is None:
        _service_client = create_client(
            settings.supabase_url,
            settings.supabase_service_role_key or settings.supabase_anon_key,
        )

    return _service_client
