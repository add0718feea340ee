from fastapi import APIRouter
from pydantic import BaseModel

from umami_sync.core.config import get_settings

router = APIRouter(prefix="/api", tags=["config"])


class HealthResponse(BaseModel):
    status: str
    version: str


class ConfigResponse(BaseModel):
    umami_db_host: str
    umami_db_name: str
    umami_api_base_url: str
    website_ids: list[str]
    initial_sync_days: int
    sync_buffer_hours: int
    api_page_size: int
    api_max_pages: int
    partition_concurrency: int
    sync_interval_minutes: int
    debug: bool


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version="0.1.0")


@router.get("/config", response_model=ConfigResponse)
async def get_config() -> ConfigResponse:
    """Get current configuration (excluding secrets)."""
    settings = get_settings()
    return ConfigResponse(
        umami_db_host=settings.umami_db_host,
        umami_db_name=settings.umami_db_name,
        umami_api_base_url=settings.umami_api_base_url,
        website_ids=settings.website_ids,
        initial_sync_days=settings.initial_sync_days,
        sync_buffer_hours=settings.sync_buffer_hours,
        api_page_size=settings.api_page_size,
        api_max_pages=settings.api_max_pages,
        partition_concurrency=settings.partition_concurrency,
        sync_interval_minutes=settings.sync_interval_minutes,
        debug=settings.debug,
    )
