"""Pembinaan Engine - API Routers"""
from .catalog import router as catalog_router
from .cases import router as cases_router
from .schedule import router as schedule_router
from .reservations import router as reservations_router

__all__ = [
    "catalog_router",
    "cases_router",
    "schedule_router",
    "reservations_router",
]
