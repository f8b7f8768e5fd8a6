import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from app.core.config import get_settings
from app.core.logging import get_logger

log = get_logger(__name__)

_client: AsyncIOMotorClient | None = None


def _client_kwargs(uri: str) -> dict:
    # Atlas (mongodb+srv or tls=true) needs the certifi bundle; plain mongodb:// in CI does not
    if "mongodb+srv://" not in uri and "tls=true" not in uri.lower():
        return {}
    return {"tlsCAFile": certifi.where(), "tlsDisableOCSPEndpointCheck": True}


async def init_db() -> None:
    """Connect beanie when the mongo record store is in use; the memory store needs nothing."""
    global _client
    settings = get_settings()
    if settings.record_store_backend != "mongo" or _client is not None:
        return
    from app.db.mongo import DOCUMENT_MODELS

    _client = AsyncIOMotorClient(settings.mongodb_uri, **_client_kwargs(settings.mongodb_uri))
    await init_beanie(database=_client[settings.mongodb_db_name], document_models=DOCUMENT_MODELS)
    log.info("mongo_connected", database=settings.mongodb_db_name)


async def close_db() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
