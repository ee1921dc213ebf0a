from fastapi import APIRouter

from stocktake.api.v1.endpoints import (
    reports,
    runs,
    sessions,
    shops,
    zones,
)


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Counting Runs ====================
api_router.include_router(
    runs.router,
    tags=["Counting Runs"]
)

# ==================== Inventory Sessions ====================
api_router.include_router(
    sessions.router,
    tags=["Inventory Sessions"]
)

# ==================== Shop Inventory ====================
api_router.include_router(
    shops.router,
    tags=["Shop Inventory"]
)

# ==================== Zones ====================
api_router.include_router(
    zones.router,
    tags=["Zones"]
)

# ==================== Reports ====================
api_router.include_router(
    reports.router,
    tags=["Inventory Reports"]
)
