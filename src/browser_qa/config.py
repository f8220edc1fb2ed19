"""Configuration models for browser-qa."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMConfig(BaseModel):
    """Settings for the LLM provider."""

    provider: str = Field(default="openai")
    model: Optional[str] = Field(
        default=None,
        description="Model driving multi-step browser agent tasks.",
    )
    utility_model: Optional[str] = Field(
        default=None,
        description="Cheaper model used for chat, planning and verification.",
    )
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class BrowserConfig(BaseModel):
    """Settings for spawned browser instances."""

    headless: bool = False
    executable_path: Optional[Path] = Field(
        default=None,
        description="Chromium binary; defaults to the one installed by Playwright.",
    )
    launch_timeout: float = Field(default=15.0, description="Seconds to wait for DevTools.")
    viewport_width: int = 1280
    viewport_height: int = 720
    enable_vnc: bool = False
    vnc_host: str = "127.0.0.1"
    vnc_port: Optional[int] = None
    extra_args: list[str] = Field(default_factory=list)


class NotificationConfig(BaseModel):
    """Output sink settings."""

    channel: str = Field(
        default="console",
        description="Comma-separated sinks: console, log or null.",
    )


class StoreConfig(BaseModel):
    """Knowledge/history store settings."""

    backend: str = Field(default="json")
    max_learnings: int = Field(default=200, description="Learnings kept per domain.")


class AppConfig(BaseSettings):
    """Top-level configuration for the agent."""

    model_config = SettingsConfigDict(
        env_prefix="BROWSER_QA_",
        env_file=(".env",),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    llm: LLMConfig = Field(default_factory=LLMConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    data_dir: Path = Field(default=Path("data"))
    target_url: Optional[str] = Field(
        default=None,
        description="URL opened by newly spawned browsers.",
    )
    default_browser: str = Field(default="main")
    billing_cycle_day: int = Field(default=1, ge=1, le=28)

    @property
    def agent_model(self) -> str:
        return self.llm.model or "unknown"

    @property
    def utility_model(self) -> str:
        return self.llm.utility_model or self.agent_model


def load_config(
    path: Path | None = None,
    *,
    env_file: Path | None = None,
    **overrides: object,
) -> AppConfig:
    """Load configuration from an optional file and overrides."""

    data: dict[str, Any] = {}
    if path:
        import yaml

        data = yaml.safe_load(path.read_text()) or {}
    if overrides:
        _deep_update(data, overrides)
    settings_kwargs: dict[str, object] = {}
    if env_file is not None:
        settings_kwargs["_env_file"] = env_file
    config = AppConfig(**data, **settings_kwargs)
    if not data:
        return config

    merged = config.model_dump(mode="python")
    _deep_update(merged, data)
    return AppConfig.model_validate(merged)


def _deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> None:
    """Recursively merge ``updates`` into ``target`` in-place."""

    for key, value in updates.items():
        if (
            isinstance(value, Mapping)
            and isinstance(existing := target.get(key), Mapping)
        ):
            nested: dict[str, Any]
            if isinstance(existing, dict):
                nested = existing
            else:
                nested = dict(existing)
            _deep_update(nested, value)
            target[key] = nested
        else:
            target[key] = value
