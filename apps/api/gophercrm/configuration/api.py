from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from gophercrm.configuration.defaults import ConfigCategory
from gophercrm.configuration.schemas import ConfigurationList, ConfigurationRead, ConfigurationUpdate
from gophercrm.configuration.service import ConfigurationService
from gophercrm.core.database import get_db
from gophercrm.identity.api import get_current_actor
from gophercrm.platform.security.context import Actor


configurations_router = APIRouter(prefix="/configurations", tags=["configurations"])


def get_configuration_service(db: Session = Depends(get_db)) -> ConfigurationService:
    return ConfigurationService(db)


@configurations_router.get("/ui", response_model=ConfigurationList)
def list_ui_configurations(
    actor: Actor = Depends(get_current_actor),
    service: ConfigurationService = Depends(get_configuration_service),
) -> ConfigurationList:
    return ConfigurationList(configurations=service.ui_configurations())


@configurations_router.get("", response_model=ConfigurationList)
def list_configurations(
    actor: Actor = Depends(get_current_actor),
    service: ConfigurationService = Depends(get_configuration_service),
) -> ConfigurationList:
    rows = service.list_configurations(actor)
    return ConfigurationList(configurations=[ConfigurationRead.model_validate(row) for row in rows])


@configurations_router.get("/category/{category}", response_model=ConfigurationList)
def list_configurations_by_category(
    category: ConfigCategory,
    actor: Actor = Depends(get_current_actor),
    service: ConfigurationService = Depends(get_configuration_service),
) -> ConfigurationList:
    rows = service.list_configurations(actor, category=category)
    return ConfigurationList(configurations=[ConfigurationRead.model_validate(row) for row in rows])


@configurations_router.get("/{key}", response_model=ConfigurationRead)
def get_configuration(
    key: str,
    actor: Actor = Depends(get_current_actor),
    service: ConfigurationService = Depends(get_configuration_service),
) -> ConfigurationRead:
    return ConfigurationRead.model_validate(service.get_configuration(actor, key))


@configurations_router.put("/{key}", response_model=ConfigurationRead)
def set_configuration(
    key: str,
    dto: ConfigurationUpdate,
    actor: Actor = Depends(get_current_actor),
    service: ConfigurationService = Depends(get_configuration_service),
) -> ConfigurationRead:
    return ConfigurationRead.model_validate(service.set_value(actor, key, dto.value))


@configurations_router.post("/{key}/reset", response_model=ConfigurationRead)
def reset_configuration(
    key: str,
    actor: Actor = Depends(get_current_actor),
    service: ConfigurationService = Depends(get_configuration_service),
) -> ConfigurationRead:
    return ConfigurationRead.model_validate(service.reset(actor, key))
