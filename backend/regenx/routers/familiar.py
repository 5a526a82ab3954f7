from __future__ import annotations

from fastapi import APIRouter

from .. import services
from ..models import ActivityPostsRequest, CareActionRequest, PrivacyOptInRequest

router = APIRouter(prefix="/familiar", tags=["familiar"])


@router.post("/{user_id}")
async def create(user_id: str) -> dict:
    record = await services.create_familiar(user_id)
    return record.model_dump(mode="json")


@router.get("/{user_id}")
async def detail(user_id: str) -> dict:
    return await services.get_familiar_overview(user_id)


@router.post("/{user_id}/care")
async def care(user_id: str, payload: CareActionRequest) -> dict:
    result = await services.perform_care_action(user_id, payload.action)
    return result.model_dump(mode="json")


@router.post("/{user_id}/privacy")
async def privacy(user_id: str, payload: PrivacyOptInRequest) -> dict:
    record = await services.set_privacy_opt_in(user_id, payload.opt_in)
    return {"user_id": record.user_id, "privacy_opt_in": record.privacy_opt_in}


@router.post("/{user_id}/activity")
async def activity(user_id: str, payload: ActivityPostsRequest) -> dict:
    pattern = await services.record_activity(user_id, payload.subreddits)
    return pattern.model_dump(mode="json")
