from fastapi import APIRouter

from storescout.api.routes import candidates, discoveries, health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(discoveries.router, prefix="/discoveries", tags=["feeds"])
api_router.include_router(candidates.router, prefix="/candidates", tags=["catalog"])
