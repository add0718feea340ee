# Database models
from umami_sync.models.database import User
from umami_sync.models.sync_state import GLOBAL_WATERMARK_ID, SyncWatermark
from umami_sync.models.sync_log import SyncLog

__all__ = [
    "User",
    "SyncWatermark",
    "GLOBAL_WATERMARK_ID",
    "SyncLog",
]
