from __future__ import annotations

from fastapi import APIRouter

from fatural.modules.exports.api import router as exports_router
from fatural.modules.identity.api import router as identity_router
from fatural.modules.jobs.api import router as jobs_router

router = APIRouter()

router.include_router(identity_router, prefix="/api")
router.include_router(jobs_router, prefix="/api")
router.include_router(exports_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
