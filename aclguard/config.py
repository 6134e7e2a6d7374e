"""Engine configuration via pydantic-settings."""

from __future__ import annotations

from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from ``ACLGUARD_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ACLGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["production", "staging", "development", "test"] = "development"

    # Authorities
    admin_authority: str = "ROLE_ADMIN"
    administering_authority: str = "ROLE_ADMIN"

    # Permission cache
    cache_max_entries: int = 10000

    # ACL storage
    acl_storage_type: Literal["memory", "file", "sql"] = "memory"
    acl_storage_path: str = "data/acl"
    acl_database_url: str = "sqlite:///data/acl.db"

    # Behaviour
    orphan_policy: Literal["reparent", "cascade", "forbid"] = "reparent"
    post_check_policy: Literal["deny", "null"] = "deny"

    # Audit
    audit_enabled: bool = True
    audit_storage_type: Literal["memory", "file"] = "memory"
    audit_storage_path: str = "data/audit"
    audit_memory_max_records: int = 10000
    denial_alert_threshold: int = 10
    denial_alert_window_seconds: int = 60

    # Static operation rules (YAML)
    policy_file: str | None = None

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Reject configurations that would disable cache bounds."""
        if self.cache_max_entries < 1:
            raise ValueError("cache_max_entries must be at least 1")
        if self.denial_alert_threshold < 1:
            raise ValueError("denial_alert_threshold must be at least 1")
        if self.audit_memory_max_records < 1:
            raise ValueError("audit_memory_max_records must be at least 1")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
