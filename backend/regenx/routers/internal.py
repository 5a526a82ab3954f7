from __future__ import annotations

from fastapi import APIRouter

from .. import services

router = APIRouter(prefix="/internal", tags=["internal"])


@router.post("/jobs/run-due")
async def run_due() -> dict:
    dispatched = await services.run_due_jobs()
    return {"dispatched": dispatched}


@router.post("/familiar/{user_id}/evolution-cycle")
async def evolution_cycle(user_id: str) -> dict:
    record = await services.run_evolution_cycle(user_id)
    return record.model_dump(mode="json")
