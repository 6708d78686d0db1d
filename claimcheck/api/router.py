from fastapi import APIRouter

from claimcheck.api.routes import health, investigations, maintenance

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(investigations.router, prefix="/investigations", tags=["investigations"])
api_router.include_router(maintenance.router, prefix="/maintenance", tags=["maintenance"])
