from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import Select, or_, select
from sqlalchemy.orm import Session

from gophercrm import audit, events
from gophercrm.configuration.defaults import (
    COMPANY_NAME,
    DEFAULT_CONFIGURATIONS,
    DEFAULTS_BY_KEY,
    LEAD_CONVERSION_STATUSES,
    ConfigCategory,
    ConfigType,
    ConfigurationDefault,
)
from gophercrm.configuration.models import Configuration
from gophercrm.configuration.schemas import ConfigurationRead
from gophercrm.core.errors import InvalidRequestError, NotFoundError
from gophercrm.crm.lifecycle import LeadStatus
from gophercrm.platform.security.context import Actor
from gophercrm.platform.security.policies import Operation, PermissionEvaluator, ResourceType, default_evaluator


logger = logging.getLogger("gophercrm.configuration")

# Keys outside the ui category that the UI endpoint still exposes.
UI_EXTRA_KEYS = (COMPANY_NAME, LEAD_CONVERSION_STATUSES)


class ConfigurationReadOnlyError(InvalidRequestError):
    code = "configuration_read_only"
    default_message = "configuration is read-only"


class InvalidConfigurationValueError(InvalidRequestError):
    code = "invalid_configuration_value"
    default_message = "invalid value for configuration"


def validate_value(value_type: ConfigType, value: Any, valid_values: Iterable[Any] | None = None) -> Any:
    """Check ``value`` against the declared type and allowed values; returns the value to store."""

    if value_type is ConfigType.STRING:
        ok = isinstance(value, str)
    elif value_type is ConfigType.BOOLEAN:
        ok = isinstance(value, bool)
    elif value_type is ConfigType.INTEGER:
        ok = isinstance(value, int) and not isinstance(value, bool)
    elif value_type is ConfigType.FLOAT:
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        if ok:
            value = float(value)
    elif value_type is ConfigType.JSON:
        ok = isinstance(value, dict)
    else:
        ok = isinstance(value, list)
    if not ok:
        raise InvalidConfigurationValueError(f"value must be of type {value_type}")

    if valid_values is None:
        return value
    allowed = list(valid_values)
    items = value if value_type is ConfigType.ARRAY else [value]
    rejected = [item for item in items if item not in allowed]
    if rejected:
        raise InvalidConfigurationValueError(
            "value is not one of the allowed values", details={"rejected": rejected, "allowed": allowed}
        )
    return value


def _read_default(item: ConfigurationDefault) -> ConfigurationRead:
    return ConfigurationRead(
        key=item.key,
        value=item.value,
        value_type=item.value_type,
        category=item.category,
        description=item.description,
        default_value=item.default_value,
        is_system=item.is_system,
        is_read_only=item.is_read_only,
        valid_values=list(item.valid_values) if item.valid_values is not None else None,
    )


class ConfigurationService:
    """Admin-managed runtime settings stored as typed JSON values.

    Reads by internal callers (``value``, ``lead_conversion_statuses``) fall
    back to the built-in defaults when a key has not been seeded yet.
    """

    entity_type = "configuration"
    resource = ResourceType.CONFIGURATION

    def __init__(self, session: Session, evaluator: PermissionEvaluator = default_evaluator) -> None:
        self.session = session
        self.evaluator = evaluator

    def ensure_defaults(self) -> int:
        existing = set(self.session.scalars(select(Configuration.key)))
        created = 0
        for item in DEFAULT_CONFIGURATIONS:
            if item.key in existing:
                continue
            self.session.add(
                Configuration(
                    key=item.key,
                    value=item.value,
                    value_type=item.value_type.value,
                    category=item.category.value,
                    description=item.description,
                    default_value=item.default_value,
                    is_system=item.is_system,
                    is_read_only=item.is_read_only,
                    valid_values=list(item.valid_values) if item.valid_values is not None else None,
                )
            )
            created += 1
        if created:
            self.session.commit()
            logger.info("configuration.defaults_created", extra={"count": created})
        return created

    def list_configurations(self, actor: Actor, category: ConfigCategory | None = None) -> list[Configuration]:
        self.evaluator.list_scope(actor, self.resource)
        stmt: Select[tuple[Configuration]] = select(Configuration)
        if category is not None:
            stmt = stmt.where(Configuration.category == category.value)
        return list(self.session.scalars(stmt.order_by(Configuration.key)))

    def get_configuration(self, actor: Actor, key: str) -> Configuration:
        configuration = self._load(key)
        self.evaluator.authorize(actor, self.resource, Operation.GET, record=configuration)
        return configuration

    def set_value(self, actor: Actor, key: str, value: Any) -> Configuration:
        configuration = self._load_writable(actor, key)
        stored = validate_value(ConfigType(configuration.value_type), value, configuration.valid_values)
        return self._store(actor, configuration, stored, action="update")

    def reset(self, actor: Actor, key: str) -> Configuration:
        configuration = self._load_writable(actor, key)
        return self._store(actor, configuration, configuration.default_value, action="reset")

    def value(self, key: str) -> Any:
        configuration = self.session.scalar(select(Configuration).where(Configuration.key == key))
        if configuration is not None:
            return configuration.value
        default = DEFAULTS_BY_KEY.get(key)
        if default is None:
            raise NotFoundError("configuration not found")
        return default.value

    def lead_conversion_statuses(self) -> list[str]:
        statuses = self.value(LEAD_CONVERSION_STATUSES)
        if not isinstance(statuses, list):
            return [LeadStatus.QUALIFIED.value]
        return [status for status in statuses if isinstance(status, str)]

    def ui_configurations(self) -> list[ConfigurationRead]:
        """Settings any authenticated user may read: the ui category plus a few display keys."""

        rows = self.session.scalars(
            select(Configuration).where(
                or_(Configuration.category == ConfigCategory.UI.value, Configuration.key.in_(UI_EXTRA_KEYS))
            )
        )
        found = {row.key: ConfigurationRead.model_validate(row) for row in rows}
        for item in DEFAULT_CONFIGURATIONS:
            if item.key not in found and (item.category is ConfigCategory.UI or item.key in UI_EXTRA_KEYS):
                found[item.key] = _read_default(item)
        return [found[key] for key in sorted(found)]

    def _load(self, key: str) -> Configuration:
        configuration = self.session.scalar(select(Configuration).where(Configuration.key == key))
        if configuration is None:
            raise NotFoundError("configuration not found")
        return configuration

    def _load_writable(self, actor: Actor, key: str) -> Configuration:
        configuration = self._load(key)
        self.evaluator.authorize(actor, self.resource, Operation.UPDATE, record=configuration)
        if configuration.is_read_only:
            raise ConfigurationReadOnlyError()
        return configuration

    def _store(self, actor: Actor, configuration: Configuration, value: Any, *, action: str) -> Configuration:
        before = ConfigurationRead.model_validate(configuration).model_dump(mode="json")
        configuration.value = value
        self.session.commit()
        self.session.refresh(configuration)

        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=configuration.key,
            action=action,
            before=before,
            after=ConfigurationRead.model_validate(configuration).model_dump(mode="json"),
        )
        events.publish(
            events.build_envelope(
                "system.configuration.updated",
                actor.id,
                {"key": configuration.key, "action": action},
            )
        )
        logger.info("configuration.updated", extra={"config_key": configuration.key, "outcome": action})
        return configuration
