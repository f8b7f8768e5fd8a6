"""Dead-letter: failed ARQ jobs for inspection."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class FailedJob(BaseModel):
    job_name: str
    job_id: str
    args: list[Any] = Field(default_factory=list)
    kwargs: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""
    retries: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
