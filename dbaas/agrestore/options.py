"""
Per-invocation restore options.

The legacy invocation surface passes flags as 'Y'/'N' strings and optional
names as empty strings; both are accepted here and normalized.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .security.ordering import ReplayOrder


class RestoreOptions(BaseModel):
    """Options of one restore invocation."""

    model_config = ConfigDict(frozen=True)

    check_model_autogrowth: bool = Field(
        default=False, description="Copy file autogrowth settings from the model database"
    )
    availability_group: str | None = Field(
        default=None, description="Availability group to (re)join after the restore"
    )
    shared_folder: str | None = Field(
        default=None, description="Folder reachable by every replica, used for seeding backups"
    )
    preserve_permissions: bool = Field(
        default=False, description="Capture principals before the restore and replay them after"
    )
    log_to_table: bool = Field(default=False, description="Write every command to CommandLog")
    replay_order: ReplayOrder = Field(
        default=ReplayOrder.ROLES_FIRST, description="Principal replay ordering strategy"
    )
    execute: bool = Field(default=True, description="False logs commands without running them")

    @field_validator(
        "check_model_autogrowth", "preserve_permissions", "log_to_table", "execute", mode="before"
    )
    @classmethod
    def _parse_flag(cls, value: Any) -> Any:
        if isinstance(value, str):
            flag = value.strip().upper()
            if flag in ("Y", "YES", "TRUE", "1"):
                return True
            if flag in ("N", "NO", "FALSE", "0", ""):
                return False
            raise ValueError(f"Expected Y or N, got {value!r}")
        return value

    @field_validator("availability_group", "shared_folder", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def joins_availability_group(self) -> bool:
        return self.availability_group is not None and self.shared_folder is not None
