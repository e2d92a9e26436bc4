from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class WebhookConfigCreate(BaseModel):
    user_id: UUID
    url: str = Field(min_length=1, max_length=2048)
    secret: str | None = Field(default=None, max_length=255)
    is_active: bool = True


class WebhookConfigUpdate(BaseModel):
    url: str | None = Field(default=None, min_length=1, max_length=2048)
    secret: str | None = Field(default=None, max_length=255)


class WebhookConfigRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    url: str
    has_secret: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime


class WebhookTestResult(BaseModel):
    webhook_config_id: UUID
    success: bool
    status_code: int | None
    response_body: str | None = None
