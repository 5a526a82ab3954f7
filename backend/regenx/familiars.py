from __future__ import annotations

import json
import logging
import random
from datetime import datetime
from typing import Callable, Dict, Optional

from . import config
from .errors import FamiliarNotFoundError
from .models import Biome, EngineSettings, Familiar, FamiliarStats, MutationData
from .stats import apply_stat_effects
from .storage import StoreAdapter
from .timeutils import hours_between, now_utc, parse_iso_to_utc

logger = logging.getLogger(__name__)


def familiar_key(user_id: str) -> str:
    return config.FAMILIAR_KEY.format(user_id=user_id)


def archived_key(user_id: str) -> str:
    return config.ARCHIVED_FAMILIAR_KEY.format(user_id=user_id)


def _flag(value: bool) -> str:
    return "true" if value else "false"


def serialize_familiar(familiar: Familiar) -> Dict[str, str]:
    return {
        "user_id": familiar.user_id,
        "age": str(familiar.age),
        "care_meter": str(familiar.care_meter),
        "evolution_points": str(familiar.evolution_points),
        "mutations": json.dumps([mutation.model_dump(mode="json") for mutation in familiar.mutations]),
        "stats": familiar.stats.model_dump_json(),
        "biome": familiar.biome.value,
        "last_care_time": familiar.last_care_time.isoformat(),
        "created_at": familiar.created_at.isoformat(),
        "privacy_opt_in": _flag(familiar.privacy_opt_in),
        "neglect_warning": _flag(familiar.neglect_warning),
    }


def deserialize_familiar(user_id: str, data: Dict[str, str], fallback_time: datetime) -> Familiar:
    last_care = data.get("last_care_time")
    created = data.get("created_at")
    return Familiar(
        id=familiar_key(user_id),
        user_id=data.get("user_id", user_id),
        age=int(data.get("age", "0")),
        care_meter=int(data.get("care_meter", str(config.CARE_METER_MAX))),
        evolution_points=int(data.get("evolution_points", "0")),
        mutations=[MutationData.model_validate(item) for item in json.loads(data.get("mutations", "[]"))],
        stats=FamiliarStats.model_validate_json(data["stats"]) if data.get("stats") else FamiliarStats(),
        biome=Biome(data.get("biome", Biome.jungle.value)),
        last_care_time=parse_iso_to_utc(last_care) if last_care else fallback_time,
        created_at=parse_iso_to_utc(created) if created else fallback_time,
        privacy_opt_in=data.get("privacy_opt_in") == "true",
        neglect_warning=data.get("neglect_warning") == "true",
    )


class FamiliarRepository:
    """Owns the canonical familiar record stored under ``familiar:{user_id}``."""

    def __init__(
        self,
        store: StoreAdapter,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = now_utc,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.rng = rng or random.Random()

    async def get(self, user_id: str) -> Optional[Familiar]:
        data = await self.store.hget_all(familiar_key(user_id))
        if not data:
            return None
        return deserialize_familiar(user_id, data, self.clock())

    async def require(self, user_id: str) -> Familiar:
        familiar = await self.get(user_id)
        if familiar is None:
            raise FamiliarNotFoundError(user_id)
        return familiar

    async def create(self, user_id: str) -> Familiar:
        existing = await self.get(user_id)
        if existing is not None:
            return existing

        now = self.clock()
        key = familiar_key(user_id)
        # created_at doubles as the creation claim; a racing creator loses here.
        claimed = await self.store.hsetnx(key, "created_at", now.isoformat())
        if not claimed:
            return await self.require(user_id)

        familiar = Familiar(
            id=key,
            user_id=user_id,
            biome=self.rng.choice(list(Biome)),
            last_care_time=now,
            created_at=now,
        )
        await self.store.hset(key, serialize_familiar(familiar))
        logger.info("Created familiar %s in biome %s", key, familiar.biome.value)
        return familiar

    async def update_care_meter(self, user_id: str, value: int) -> int:
        clamped = max(0, min(config.CARE_METER_MAX, int(value)))
        await self.store.hset(
            familiar_key(user_id),
            {
                "care_meter": str(clamped),
                "neglect_warning": _flag(clamped < config.NEGLECT_THRESHOLD),
            },
        )
        return clamped

    async def record_care(self, user_id: str, evolution_points: int, cared_at: datetime) -> None:
        await self.store.hset(
            familiar_key(user_id),
            {
                "evolution_points": str(evolution_points),
                "last_care_time": cared_at.isoformat(),
            },
        )

    async def set_neglect_warning(self, user_id: str) -> None:
        await self.store.hset(familiar_key(user_id), {"neglect_warning": "true"})

    async def adjust_evolution_points(self, user_id: str, delta: int) -> int:
        return await self.store.hincrby(familiar_key(user_id), "evolution_points", delta)

    async def increment_age(self, user_id: str) -> int:
        return await self.store.hincrby(familiar_key(user_id), "age", 1)

    async def set_biome(self, user_id: str, biome: Biome) -> None:
        await self.store.hset(familiar_key(user_id), {"biome": biome.value})

    async def set_privacy_opt_in(self, user_id: str, opt_in: bool) -> Familiar:
        familiar = await self.require(user_id)
        await self.store.hset(familiar_key(user_id), {"privacy_opt_in": _flag(opt_in)})
        return familiar.model_copy(update={"privacy_opt_in": opt_in})

    async def append_mutation(self, user_id: str, mutation: MutationData) -> Familiar:
        familiar = await self.require(user_id)
        mutations = [*familiar.mutations, mutation]
        stats = apply_stat_effects(familiar.stats, mutation.stat_effects)
        await self.store.hset(
            familiar_key(user_id),
            {
                "mutations": json.dumps([item.model_dump(mode="json") for item in mutations]),
                "stats": stats.model_dump_json(),
            },
        )
        return familiar.model_copy(update={"mutations": mutations, "stats": stats})

    async def check_for_removal(self, user_id: str) -> bool:
        familiar = await self.get(user_id)
        if familiar is None:
            return False

        idle_hours = hours_between(familiar.last_care_time, self.clock())
        if familiar.care_meter == 0 and idle_hours >= self.settings.removal_after_hours:
            await self._archive_and_remove(familiar)
            return True
        return False

    async def get_archived(self, user_id: str) -> Optional[Familiar]:
        data = await self.store.hget_all(archived_key(user_id))
        if not data:
            return None
        return deserialize_familiar(user_id, data, self.clock())

    async def _archive_and_remove(self, familiar: Familiar) -> None:
        # The live record is only deleted once the archive copy is written.
        key = familiar_key(familiar.user_id)
        archive = archived_key(familiar.user_id)
        await self.store.hset(archive, serialize_familiar(familiar))
        await self.store.expire(archive, self.settings.archive_ttl_seconds)
        await self.store.delete(key)
        logger.info("Archived and removed neglected familiar %s", key)
