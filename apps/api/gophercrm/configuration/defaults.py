from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from gophercrm.crm.lifecycle import LeadStatus


class ConfigType(StrEnum):
    STRING = "string"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    JSON = "json"
    ARRAY = "array"


class ConfigCategory(StrEnum):
    GENERAL = "general"
    LEADS = "leads"
    CUSTOMERS = "customers"
    TICKETS = "tickets"
    TASKS = "tasks"
    SECURITY = "security"
    INTEGRATION = "integration"
    UI = "ui"


LEAD_CONVERSION_STATUSES = "leads.conversion.allowed_statuses"
LEAD_CONVERSION_REQUIRE_NOTES = "leads.conversion.require_notes"
LEAD_CONVERSION_AUTO_ASSIGN_OWNER = "leads.conversion.auto_assign_owner"
COMPANY_NAME = "general.company_name"


@dataclass(frozen=True, slots=True)
class ConfigurationDefault:
    key: str
    value: Any
    value_type: ConfigType
    category: ConfigCategory
    description: str
    default_value: Any
    is_system: bool = False
    is_read_only: bool = False
    valid_values: tuple[Any, ...] | None = None


DEFAULT_CONFIGURATIONS: tuple[ConfigurationDefault, ...] = (
    ConfigurationDefault(
        key=LEAD_CONVERSION_STATUSES,
        value=[LeadStatus.QUALIFIED.value, LeadStatus.CONTACTED.value],
        value_type=ConfigType.ARRAY,
        category=ConfigCategory.LEADS,
        description="Lead statuses that allow conversion to customer",
        default_value=[LeadStatus.QUALIFIED.value],
        is_system=True,
        valid_values=tuple(status.value for status in LeadStatus if status is not LeadStatus.CONVERTED),
    ),
    ConfigurationDefault(
        key=LEAD_CONVERSION_REQUIRE_NOTES,
        value=False,
        value_type=ConfigType.BOOLEAN,
        category=ConfigCategory.LEADS,
        description="Whether conversion notes are required when converting leads",
        default_value=False,
        is_system=True,
    ),
    ConfigurationDefault(
        key=LEAD_CONVERSION_AUTO_ASSIGN_OWNER,
        value=True,
        value_type=ConfigType.BOOLEAN,
        category=ConfigCategory.LEADS,
        description="Whether to automatically assign the lead owner as customer owner",
        default_value=True,
        is_system=True,
    ),
    ConfigurationDefault(
        key="ui.theme.primary_color",
        value="#1976d2",
        value_type=ConfigType.STRING,
        category=ConfigCategory.UI,
        description="Primary theme color for the application",
        default_value="#1976d2",
    ),
    ConfigurationDefault(
        key=COMPANY_NAME,
        value="GopherCRM",
        value_type=ConfigType.STRING,
        category=ConfigCategory.GENERAL,
        description="Company name displayed in the application",
        default_value="GopherCRM",
    ),
    ConfigurationDefault(
        key="security.session_timeout_hours",
        value=24,
        value_type=ConfigType.INTEGER,
        category=ConfigCategory.SECURITY,
        description="Session timeout in hours",
        default_value=24,
        is_system=True,
        valid_values=(1, 8, 24, 48, 72, 168),
    ),
    ConfigurationDefault(
        key="tickets.auto_assign_support",
        value=True,
        value_type=ConfigType.BOOLEAN,
        category=ConfigCategory.TICKETS,
        description="Whether to automatically assign tickets to available support users",
        default_value=False,
    ),
)

DEFAULTS_BY_KEY = {item.key: item for item in DEFAULT_CONFIGURATIONS}
