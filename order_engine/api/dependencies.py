from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import sessionmaker

from order_engine.core import database
from order_engine.services.coordinator import TransactionCoordinator
from order_engine.services.inventory_service import InventoryService


def get_session_factory() -> sessionmaker:
    """Session factory used by the API; tests swap it through ``app.dependency_overrides``."""
    return database.get_session_factory()


@lru_cache()
def _coordinator_for(session_factory: sessionmaker) -> TransactionCoordinator:
    return TransactionCoordinator(session_factory)


@lru_cache()
def _inventory_service_for(session_factory: sessionmaker) -> InventoryService:
    return InventoryService(session_factory)


def get_coordinator(session_factory: sessionmaker = Depends(get_session_factory)) -> TransactionCoordinator:
    return _coordinator_for(session_factory)


def get_inventory_service(session_factory: sessionmaker = Depends(get_session_factory)) -> InventoryService:
    return _inventory_service_for(session_factory)
