from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from gophercrm.configuration.defaults import ConfigCategory, ConfigType


class ConfigurationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    value: Any
    value_type: ConfigType
    category: ConfigCategory
    description: str
    default_value: Any
    is_system: bool
    is_read_only: bool
    valid_values: list[Any] | None
    updated_at: datetime | None = None


class ConfigurationUpdate(BaseModel):
    value: Any


class ConfigurationList(BaseModel):
    configurations: list[ConfigurationRead]
