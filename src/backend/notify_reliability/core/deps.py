"""Dependency injection utilities for FastAPI."""

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from notify_reliability.core.config import Settings, settings
from notify_reliability.services.delivery.sql_store import SqlDeliveryStore, create_tables
from notify_reliability.services.delivery.store import DeliveryStore, InMemoryDeliveryStore
from notify_reliability.services.delivery_service import NotificationDeliveryService


async def build_delivery_store(config: Settings = settings) -> DeliveryStore:
    """Create the store selected by storage_backend."""
    if config.storage_backend == "sql":
        engine = create_async_engine(config.database_url, echo=config.debug)
        await create_tables(engine)
        session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        return SqlDeliveryStore(session_factory, engine=engine)
    return InMemoryDeliveryStore()


async def build_delivery_service(config: Settings = settings) -> NotificationDeliveryService:
    """Create a delivery service wired to the configured store."""
    store = await build_delivery_store(config)
    return NotificationDeliveryService(store=store, config=config)


def get_delivery_service(request: Request) -> NotificationDeliveryService:
    """Dependency returning the service created in the application lifespan."""
    service = getattr(request.app.state, "delivery_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Delivery service not initialized",
        )
    return service
