"""Schemas for broker entity declarations and publishing."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class QueueOptions(BaseModel):
    """Queue declaration flags. Defaults describe a private reply queue."""
    exclusive: bool = True
    auto_delete: bool = True
    durable: bool = False
    arguments: dict[str, Any] = Field(default_factory=dict)


class QueueSpec(BaseModel):
    """Queue to declare. An empty id lets the broker name the queue."""
    id: str = ""
    options: QueueOptions | None = None


class ExchangeOptions(BaseModel):
    """Exchange declaration flags."""
    durable: bool = True
    auto_delete: bool = False
    internal: bool = False
    arguments: dict[str, Any] = Field(default_factory=dict)


class ExchangeSpec(BaseModel):
    """Exchange to declare."""
    name: str
    type: str = "direct"
    options: ExchangeOptions = Field(default_factory=ExchangeOptions)


class PublishOptions(BaseModel):
    """Message properties attached to a publish."""
    delivery_mode: bool = False
    reply_to: str | None = None
    correlation_id: str | None = None
    headers: dict[str, Any] = Field(default_factory=dict)
    expiration: float | None = None
    content_type: str | None = "application/json"
    content_encoding: str | None = "utf-8"
    message_id: str | None = None
    priority: int | None = Field(default=None, ge=0, le=255)


class QueueInfo(BaseModel):
    """Result of a queue declaration or check."""
    name: str
    message_count: int = 0
    consumer_count: int = 0
