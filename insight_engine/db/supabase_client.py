"""Supabase client initialization."""

from postgrest.exceptions import APIError
from supabase import Client, ClientOptions, create_client

from insight_engine.core.config import Settings
from insight_engine.core.errors import PersistenceError


def create_supabase_client(settings: Settings) -> Client:
    """
    Build the Supabase client owned by the application entry point.

    PostgREST calls use the configured timeout (30 seconds by default).

    Raises:
        RuntimeError: If client initialization fails
    """
    try:
        options = ClientOptions(postgrest_client_timeout=settings.SUPABASE_TIMEOUT_SECONDS)
        return create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY, options)
    except Exception as e:
        raise RuntimeError(f"Failed to initialize Supabase client: {e}") from e


def as_persistence_error(error: APIError, action: str) -> PersistenceError:
    """Wrap a PostgREST error, keeping the Postgres error code."""
    return PersistenceError(f"Failed to {action}: {error.message}", code=error.code)
