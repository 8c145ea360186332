"""Runtime settings read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from .errors import ConfigError

DEFAULT_HANDLES = ("@dstealth", "@dstealth.eth", "@dstealth.base.eth")
TRANSPORTS = ("discord", "telegram")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


@dataclass
class Settings:
    transport: str = "discord"
    discord_token: Optional[str] = None
    telegram_token: Optional[str] = None
    openai_api_key: Optional[str] = None
    model: str = "gpt-4.1-mini"
    api_url: str = "http://localhost:3000"
    api_token: Optional[str] = None
    miniapp_url: str = "https://dstealth.xyz"
    fluidkey_invite_url: str = "https://app.fluidkey.com/?ref=62YNSG"
    daimo_api_key: Optional[str] = None
    daimo_api_url: str = "https://pay.daimo.com"
    base_rpc_url: Optional[str] = None
    memory_db: str = "memory.db"
    handles: Tuple[str, ...] = DEFAULT_HANDLES
    triggers_override: Optional[Path] = None
    dedup_capacity: int = 1000
    resync_seconds: float = 30.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        transport = os.getenv("TRANSPORT", "discord").strip().lower() or "discord"
        if transport not in TRANSPORTS:
            raise ConfigError(f"TRANSPORT must be one of {', '.join(TRANSPORTS)}")
        handles_raw = os.getenv("AGENT_HANDLES", "")
        handles = tuple(
            item.strip().lower() for item in handles_raw.split(",") if item.strip()
        ) or DEFAULT_HANDLES
        override = os.getenv("TRIGGERS_OVERRIDE", "").strip()
        settings = cls(
            transport=transport,
            discord_token=os.getenv("DISCORD_TOKEN") or None,
            telegram_token=os.getenv("TELEGRAM_TOKEN") or None,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            model=os.getenv("MODEL", "gpt-4.1-mini"),
            api_url=os.getenv("DSTEALTH_API_URL", "http://localhost:3000").rstrip("/"),
            api_token=os.getenv("DSTEALTH_API_TOKEN") or None,
            miniapp_url=os.getenv("MINIAPP_URL", "https://dstealth.xyz"),
            fluidkey_invite_url=os.getenv(
                "FLUIDKEY_INVITE_URL", "https://app.fluidkey.com/?ref=62YNSG"
            ),
            daimo_api_key=os.getenv("DAIMO_API_KEY") or None,
            daimo_api_url=os.getenv("DAIMO_API_URL", "https://pay.daimo.com").rstrip("/"),
            base_rpc_url=os.getenv("BASE_RPC_URL") or None,
            memory_db=os.getenv("MEMORY_DB", "memory.db"),
            handles=handles,
            triggers_override=Path(override) if override else None,
            dedup_capacity=_env_int("DEDUP_CAPACITY", 1000),
            resync_seconds=_env_float("RESYNC_SECONDS", 30.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.transport == "discord" and not self.discord_token:
            raise ConfigError("Missing DISCORD_TOKEN for the discord transport.")
        if self.transport == "telegram" and not self.telegram_token:
            raise ConfigError("Missing TELEGRAM_TOKEN for the telegram transport.")
        if self.dedup_capacity < 2:
            raise ConfigError("DEDUP_CAPACITY must be at least 2.")
        if self.resync_seconds <= 0:
            raise ConfigError("RESYNC_SECONDS must be positive.")
