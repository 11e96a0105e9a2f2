from typing import Any

from pydantic import BaseModel, Field


class DiscoverySubmission(BaseModel):
    url: str = Field(min_length=1)
    source: str = Field(min_length=1, max_length=128)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DiscoveryAccepted(BaseModel):
    created: bool
    record_id: str
    url: str
    dedup_key: str
    enqueued: bool
