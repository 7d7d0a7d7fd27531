import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.engine import Engine

from subscription_reconciler.config import Settings
from subscription_reconciler.entitlement_client import LiveEntitlementClient
from subscription_reconciler.models.base import Base, make_engine, make_session_factory
from subscription_reconciler.models import subscription  # noqa: F401  registers the table
from subscription_reconciler.routers import revenuecat_router, subscription_router


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    entitlement_client: Optional[LiveEntitlementClient] = None,
) -> FastAPI:
    """
    Build the application with its store engine and RevenueCat client.

    Collaborators are attached to app.state and reached through FastAPI
    dependencies, so tests can pass in-memory engines and fake clients.
    """
    settings = settings or Settings()
    logging.basicConfig(level=settings.log_level)

    engine = engine if engine is not None else make_engine(settings.database_url)
    if entitlement_client is None:
        entitlement_client = LiveEntitlementClient(
            base_url=settings.revenuecat_base_url,
            api_key=settings.revenuecat_api_key,
            timeout=settings.revenuecat_timeout_seconds,
            entitlement_id=settings.revenuecat_entitlement_id,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.db_auto_create:
            Base.metadata.create_all(bind=engine)
        yield
        engine.dispose()

    app = FastAPI(debug=not settings.is_production, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.entitlement_client = entitlement_client

    # Include the RevenueCat webhook router under the '/api/revenuecat' prefix
    app.include_router(revenuecat_router.router, prefix="/api/revenuecat")
    app.include_router(subscription_router.router, prefix="/api/subscription")
    return app


app = create_app()
