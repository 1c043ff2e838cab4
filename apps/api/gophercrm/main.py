from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

import gophercrm.models  # noqa: F401
from gophercrm.api.errors import core_error_handler
from gophercrm.api.routes import router as api_router
from gophercrm.core.config import get_settings
from gophercrm.core.errors import CoreError
from gophercrm.core.events import InternalEvent, event_bus
from gophercrm.logging import configure_logging
from gophercrm.middleware.request_context import RequestContextMiddleware
from gophercrm.otel import instrument_app, setup_otel


configure_logging()
logger = logging.getLogger("gophercrm.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.app_debug, lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_exception_handler(CoreError, core_error_handler)
app.include_router(api_router, prefix=settings.api_prefix)

setup_otel(settings)
instrument_app(app)
