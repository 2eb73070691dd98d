from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import load_app_config

ConditionType = Literal[
    "cross_up",
    "cross_down",
    "price_gte",
    "price_lte",
    "pct_change_up",
    "pct_change_down",
]
EventType = Literal["trigger", "test"]
NotifyStatus = Literal["queued", "success", "failed"]

_SYMBOL_STRIP_RE = re.compile(r"[^A-Z0-9]")


def normalize_symbol(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("symbol is required")
    normalized = _SYMBOL_STRIP_RE.sub("", value.upper())
    if len(normalized) < 4 or len(normalized) > 10:
        raise ValueError("invalid symbol format")
    return normalized


def _validate_poll_interval(value: int) -> int:
    limits = load_app_config().limits
    if value < limits.min_poll_sec:
        raise ValueError(f"poll_interval_sec must be >= {limits.min_poll_sec}")
    if value > limits.max_poll_sec:
        raise ValueError(f"poll_interval_sec must be <= {limits.max_poll_sec}")
    return value


def _validate_notify_times(value: int) -> int:
    max_times = load_app_config().limits.max_notify_times
    if value < 1 or value > max_times:
        raise ValueError(f"notify_times must be between 1 and {max_times}")
    return value


class UserCreateIn(BaseModel):
    username: str
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None

    @field_validator("username")
    @classmethod
    def normalize_username(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("username cannot be empty")
        return v


class UserTelegramIn(BaseModel):
    telegram_bot_token: str
    telegram_chat_id: str

    @field_validator("telegram_bot_token", "telegram_chat_id")
    @classmethod
    def require_text(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("bot_token and chat_id are required")
        return v


class UserOut(BaseModel):
    id: str
    username: str
    telegram_configured: bool
    telegram_chat_id: str | None = None
    created_at: int
    updated_at: int


class AlertCreateIn(BaseModel):
    user_id: str | None = None
    symbol: str
    condition_type: ConditionType
    threshold: float = Field(gt=0)
    poll_interval_sec: int
    cooldown_sec: int | None = Field(default=None, ge=0)
    is_enabled: bool = True
    notify_times: int = 1

    @field_validator("symbol", mode="before")
    @classmethod
    def validate_symbol(cls, value: Any) -> str:
        return normalize_symbol(value)

    @field_validator("poll_interval_sec")
    @classmethod
    def validate_poll_interval(cls, value: int) -> int:
        return _validate_poll_interval(value)

    @field_validator("notify_times")
    @classmethod
    def validate_notify_times(cls, value: int) -> int:
        return _validate_notify_times(value)

    @model_validator(mode="after")
    def apply_default_cooldown(self) -> "AlertCreateIn":
        if self.cooldown_sec is None:
            self.cooldown_sec = load_app_config().limits.default_cooldown_sec
        return self


class AlertPatchIn(BaseModel):
    symbol: str | None = None
    condition_type: ConditionType | None = None
    threshold: float | None = Field(default=None, gt=0)
    poll_interval_sec: int | None = None
    cooldown_sec: int | None = Field(default=None, ge=0)
    is_enabled: bool | None = None
    notify_times: int | None = None

    @field_validator("symbol", mode="before")
    @classmethod
    def validate_symbol(cls, value: Any) -> str | None:
        if value is None:
            return None
        return normalize_symbol(value)

    @field_validator("poll_interval_sec")
    @classmethod
    def validate_poll_interval(cls, value: int | None) -> int | None:
        return None if value is None else _validate_poll_interval(value)

    @field_validator("notify_times")
    @classmethod
    def validate_notify_times(cls, value: int | None) -> int | None:
        return None if value is None else _validate_notify_times(value)


class AlertOut(BaseModel):
    id: str
    user_id: str | None = None
    symbol: str
    condition_type: ConditionType
    threshold: float
    poll_interval_sec: int
    cooldown_sec: int
    is_enabled: bool
    notify_times: int
    last_triggered_at: int | None = None
    last_state: dict[str, Any] = Field(default_factory=dict)
    created_at: int
    updated_at: int


class AlertEventOut(BaseModel):
    id: int
    user_id: str | None = None
    alert_id: str
    symbol: str | None = None
    event_type: EventType
    reason: str | None = None
    price: float | None = None
    threshold: float | None = None
    notify_status: NotifyStatus
    error_message: str | None = None
    triggered_at: int


class EngineStatusOut(BaseModel):
    rule_count: int
    group_count: int
    running: bool
    inflight_group_ticks: int = 0
    pending_notifications: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0


class ControlResponse(BaseModel):
    success: bool
    message: str | None = None
    engine: EngineStatusOut | None = None


class SpotPriceOut(BaseModel):
    symbol: str
    price: float
    as_of: int


class NotifyTestOut(BaseModel):
    event_id: int
    alert_id: str
    notify_status: NotifyStatus
    message: str


class NotifyTestIn(BaseModel):
    message: str | None = None

    @field_validator("message")
    @classmethod
    def normalize_message(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class TelegramTestOut(BaseModel):
    success: bool
    event_id: int
    error: str | None = None
