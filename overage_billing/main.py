"""
Overage Billing API
===================

FastAPI application factory. The lifespan configures logging, loads the
error registry, creates the billing tables and builds the service
container unless one was injected.

Run with:
    uvicorn overage_billing.main:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from overage_billing import __version__
from overage_billing.config import Settings, settings as default_settings
from overage_billing.core.database import engine_for, init_db, make_session_factory
from overage_billing.core.errors import OverageBillingError
from overage_billing.core.errors.middleware import overage_error_handler
from overage_billing.core.errors.registry import error_registry
from overage_billing.core.structured_logging import setup_logging
from overage_billing.routers import overage
from overage_billing.services.container import OverageServices, build_overage_services

logger = logging.getLogger(__name__)

API_TITLE = "Overage Billing API"


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[OverageServices] = None,
) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            log_dir=settings.log_dir,
            log_file=settings.log_file,
            log_level=settings.log_level,
        )
        error_registry.load()
        engine = None
        if app.state.overage_services is None:
            engine = engine_for(settings)
            init_db(engine)
            app.state.overage_services = build_overage_services(
                settings, session_scope=make_session_factory(engine)
            )
        logger.info("%s %s started", settings.app_name, __version__)
        yield
        if engine is not None:
            engine.dispose()
        logger.info("%s stopped", settings.app_name)

    app = FastAPI(title=API_TITLE, version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.overage_services = services
    app.add_exception_handler(OverageBillingError, overage_error_handler)
    app.include_router(overage.router, prefix="/api/billing/overage", tags=["overage"])
    return app


app = create_app()
