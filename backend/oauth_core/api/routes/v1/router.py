from fastapi import APIRouter
from .utils.health import router as health_router
from .integrations import router as integrations_router

router = APIRouter()
router.include_router(health_router, prefix="/utils", tags=["utils"])
router.include_router(integrations_router)
