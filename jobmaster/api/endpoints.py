from fastapi import APIRouter

from jobmaster.api.routes import jobs

router = APIRouter()
router.include_router(jobs.router, tags=["jobs"])
