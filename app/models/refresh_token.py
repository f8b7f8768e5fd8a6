from datetime import datetime

from pydantic import BaseModel, Field


class RefreshToken(BaseModel):
    token_hash: str  # sha256 of the opaque token handed to the client
    user_id: str
    role: str = "user"  # "user" | "admin"
    expires_at: datetime
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at
