"""
Channel configuration models.

Keys may be written in camelCase (as the JSON config file uses) or
snake_case.
"""

import json
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DmPolicy = Literal["open", "pairing", "allowlist", "disabled"]
GroupPolicy = Literal["open", "allowlist", "disabled"]

DEFAULT_TEXT_CHUNK_LIMIT = 4000


class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DmConfig(_ConfigModel):
    enabled: bool = True
    policy: DmPolicy = "pairing"
    allow_from: list[str] = Field(default_factory=list)


class GroupConfig(_ConfigModel):
    enabled: bool = True
    require_mention: Optional[bool] = None
    auto_reply: Optional[bool] = None
    users: list[str] = Field(default_factory=list)
    system_prompt: Optional[str] = None
    skills: Optional[list[str]] = None


class CommandsConfig(_ConfigModel):
    text: bool = True
    use_access_groups: bool = True
    names: list[str] = Field(default_factory=lambda: [
        "help", "status", "new", "reset", "stop", "model", "think", "verbose", "commands",
    ])


class ChannelConfig(_ConfigModel):
    enabled: bool = True
    name: Optional[str] = None
    sender_name: Optional[str] = None
    phone_number: Optional[str] = None
    country_code: Optional[str] = None
    dm: DmConfig = Field(default_factory=DmConfig)
    group_policy: GroupPolicy = "allowlist"
    groups: dict[str, GroupConfig] = Field(default_factory=dict)
    mention_patterns: list[str] = Field(default_factory=list)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    text_chunk_limit: int = DEFAULT_TEXT_CHUNK_LIMIT


def load_channel_config(path: Path) -> ChannelConfig:
    """Read the ``elyments`` section (or the whole file) of a JSON config.

    A missing file yields the defaults.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return ChannelConfig()
    if isinstance(raw, dict) and isinstance(raw.get("elyments"), dict):
        raw = raw["elyments"]
    return ChannelConfig.model_validate(raw)
