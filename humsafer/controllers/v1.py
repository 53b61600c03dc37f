from fastapi import APIRouter

from . import ai, usage

router = APIRouter(prefix="/v1")
router.include_router(ai.router)
router.include_router(usage.router)
