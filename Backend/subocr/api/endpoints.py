from fastapi import APIRouter

from subocr.api.routes import jobs, status

router = APIRouter()

# ─── Routers ─────────────────────────────────────────────────────────────────
router.include_router(jobs.router)
router.include_router(status.router)
