from fastapi import APIRouter

from app.api.v1.endpoints import commissions, network, volumes

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(network.router)
api_router.include_router(volumes.router)
api_router.include_router(commissions.router)
