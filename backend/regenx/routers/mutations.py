from __future__ import annotations

from fastapi import APIRouter

from .. import services
from ..models import MutationChoiceRequest

router = APIRouter(prefix="/mutation", tags=["mutation"])


@router.post("/{user_id}/trigger")
async def trigger(user_id: str) -> dict:
    choice = await services.trigger_mutation(user_id)
    return choice.model_dump(mode="json")


@router.post("/choose")
async def choose(payload: MutationChoiceRequest) -> dict:
    mutation = await services.choose_mutation(payload.session_id, payload.option_id)
    return {"mutation": mutation.model_dump(mode="json")}
