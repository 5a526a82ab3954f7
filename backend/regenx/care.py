from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from . import config
from .errors import CooldownError, FamiliarNotFoundError
from .familiars import FamiliarRepository, familiar_key
from .models import CareAction, CareActionResult, EngineSettings
from .storage import StoreAdapter
from .timeutils import hours_between, now_utc, parse_iso_to_utc

logger = logging.getLogger(__name__)


def cooldown_key(user_id: str, action: CareAction) -> str:
    return config.COOLDOWN_KEY.format(familiar_id=familiar_key(user_id), action=action.value)


class CareSystem:
    """Care actions, their cooldowns, and time-based care meter decay."""

    def __init__(
        self,
        store: StoreAdapter,
        familiars: FamiliarRepository,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.store = store
        self.familiars = familiars
        self.settings = settings or EngineSettings()
        self.clock = clock

    async def cooldown_remaining(self, user_id: str, action: CareAction) -> int:
        raw = await self.store.get(cooldown_key(user_id, action))
        if not raw:
            return 0
        remaining = (parse_iso_to_utc(raw) - self.clock()).total_seconds()
        return max(0, math.ceil(remaining))

    async def perform_care_action(self, user_id: str, action: CareAction) -> CareActionResult:
        action = CareAction(action)
        remaining = await self.cooldown_remaining(user_id, action)
        if remaining > 0:
            raise CooldownError(action.value, remaining)

        familiar = await self.familiars.get(user_id)
        if familiar is None:
            raise FamiliarNotFoundError(user_id)

        effects = config.CARE_ACTION_EFFECTS[action.value]
        now = self.clock()
        care_meter = min(config.CARE_METER_MAX, familiar.care_meter + effects["care_meter_increase"])
        evolution_points = familiar.evolution_points + effects["evolution_points_gained"]

        await self.familiars.record_care(user_id, evolution_points, now)
        care_meter = await self.familiars.update_care_meter(user_id, care_meter)

        cooldown = self.settings.care_cooldown_seconds
        if cooldown > 0:
            ends_at = now + timedelta(seconds=cooldown)
            await self.store.set(cooldown_key(user_id, action), ends_at.isoformat(), ttl_seconds=cooldown)

        logger.info("Care action %s on %s: meter %s, points %s", action.value, familiar.id, care_meter, evolution_points)
        return CareActionResult(
            care_meter=care_meter,
            evolution_points=evolution_points,
            care_meter_increase=effects["care_meter_increase"],
            evolution_points_gained=effects["evolution_points_gained"],
        )

    async def decay_care_meter(self, user_id: str) -> int:
        familiar = await self.familiars.get(user_id)
        if familiar is None:
            raise FamiliarNotFoundError(user_id)

        idle_hours = max(0.0, hours_between(familiar.last_care_time, self.clock()))
        decay = math.floor(idle_hours * self.settings.decay_per_hour)
        return await self.familiars.update_care_meter(user_id, max(0, familiar.care_meter - decay))

    async def check_neglect_warning(self, user_id: str) -> bool:
        familiar = await self.familiars.get(user_id)
        if familiar is None:
            return False

        needs_warning = familiar.care_meter < config.NEGLECT_THRESHOLD
        if needs_warning:
            await self.familiars.set_neglect_warning(user_id)
        return needs_warning
