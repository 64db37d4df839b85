"""
Base models for all Pydantic models in the application.
"""
from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, Field


def new_id() -> str:
    """Generate a document identifier."""
    return str(uuid4())


class TimestampedModel(BaseModel):
    """Base model with automatic timestamps."""

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def update_timestamp(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = datetime.utcnow()


class IdentifiedModel(TimestampedModel):
    """Base model with identification and timestamps."""

    id: str = Field(default_factory=new_id)


class UserOwnedModel(IdentifiedModel):
    """Base model for entities owned by a user."""

    user_id: str = Field(..., description="User who owns this entity")


class VersionedModel(UserOwnedModel):
    """User-owned entity written with compare-and-set on ``version``."""

    version: int = Field(default=0, ge=0)
