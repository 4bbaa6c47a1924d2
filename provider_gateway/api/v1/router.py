from fastapi import APIRouter

from provider_gateway.api.v1.admin import router as admin_router
from provider_gateway.api.v1.completions import router as completions_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(completions_router)
api_v1_router.include_router(admin_router)
