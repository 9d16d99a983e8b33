from fastapi import APIRouter

from phasegate.api.routes import gates, health

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(gates.router, tags=["gates"])
