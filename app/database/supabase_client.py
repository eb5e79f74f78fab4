import logging
from supabase import create_client, Client
from app.config import settings

logger = logging.getLogger(__name__)


class SupabaseClient:
    """
    Process-wide Supabase clients. Request handlers use the anon-key client;
    deployment workers, the application pipeline and the sync scheduler use
    the service-role client so their record writes are not filtered by RLS.
    """
    _client: Client = None
    _service_client: Client = None

    @classmethod
    def get_client(cls) -> Client:
        if cls._client is None:
            cls._client = create_client(settings.supabase_url, settings.supabase_key)
        return cls._client

    @classmethod
    def get_service_client(cls) -> Client:
        if cls._service_client is None:
            if not settings.supabase_service_role_key:
                logger.warning("SUPABASE_SERVICE_ROLE_KEY is not set; background status writes use the anon key")
                return cls.get_client()
            cls._service_client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        return cls._service_client


def get_supabase() -> Client:
    return SupabaseClient.get_client()
