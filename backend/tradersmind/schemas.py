from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class QuoteRecord(BaseModel):
    symbol: str
    price: float
    change: float
    change_percent: float
    dates: List[str] = Field(default_factory=list)
    opens: List[float] = Field(default_factory=list)
    highs: List[float] = Field(default_factory=list)
    lows: List[float] = Field(default_factory=list)
    closes: List[float] = Field(default_factory=list)
    volumes: List[int] = Field(default_factory=list)
    company: Optional[str] = None
    source: str = "unknown"


class RegistryStats(BaseModel):
    total: int
    by_kind: Dict[str, int] = Field(default_factory=dict)
    total_cache_keys: int = 0


class CleanupReport(BaseModel):
    cycle: int
    started_at: str
    duration_ms: float
    expired: int
    deleted: int
    errors: int
    cache_released: int
    threads_released: int
    tracking_swept: int
    orphan_threads_deleted: int = 0
    orphan_sweep_ran: bool = False


class RetentionStatus(BaseModel):
    running: bool
    interval_active: bool
    interval_minutes: Optional[int] = None
    retention_hours: float
    cycle_count: int
    total_tracked: int
    by_kind: Dict[str, int] = Field(default_factory=dict)
    last_run_at: Optional[str] = None
    next_run_at: Optional[str] = None
    last_report: Optional[CleanupReport] = None


class DiscordUser(BaseModel):
    id: str
    username: str = ""
    global_name: Optional[str] = None
    bot: bool = False

    @property
    def display_name(self) -> str:
        return self.global_name or self.username or self.id


class MessageEvent(BaseModel):
    id: str
    channel_id: str
    guild_id: Optional[str] = None
    content: str = ""
    type: int = 0
    author: DiscordUser


class InteractionEvent(BaseModel):
    id: str
    token: str
    type: int
    application_id: Optional[str] = None
    channel_id: str
    guild_id: Optional[str] = None
    channel: Dict[str, Any] = Field(default_factory=dict)
    data: Dict[str, Any] = Field(default_factory=dict)
    member: Dict[str, Any] = Field(default_factory=dict)
    user: Optional[DiscordUser] = None

    def acting_user(self) -> DiscordUser | None:
        if self.user is not None:
            return self.user
        raw = self.member.get("user") if isinstance(self.member, dict) else None
        if isinstance(raw, dict):
            return DiscordUser.model_validate(raw)
        return None
