"""
Models for the offline cache dispatcher and its background-sync queues.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict
from uuid import uuid4

from pydantic import BaseModel, Field


class WorkerState(str, Enum):
    """Lifecycle of the cache dispatcher (mirrors a service worker's)."""
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


class CacheStrategy(str, Enum):
    CACHE_FIRST = "cache-first"
    NETWORK_FIRST = "network-first"
    STALE_WHILE_REVALIDATE = "stale-while-revalidate"
    NETWORK_ONLY = "network-only"


class SyncTag(str, Enum):
    FORM_SUBMISSION = "form-submission"
    ANALYTICS_DATA = "analytics-data"


class QueuedItem(BaseModel):
    """One locally queued payload awaiting remote acknowledgement."""
    id: str = Field(default_factory=lambda: uuid4().hex)
    data: Dict[str, Any]
    queued_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    attempts: int = 0
