from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import Any, AsyncContextManager, Callable, Dict, Optional

from .care import CareSystem
from .familiars import FamiliarRepository
from .jobs import JobScheduler
from .models import Biome, EngineSettings
from .mutations import MutationEngine
from .timeutils import now_utc

logger = logging.getLogger(__name__)

EVOLUTION_CYCLE_JOB = "evolution-cycle"
CARE_DECAY_JOB = "care-decay"

Guard = Callable[[str], AsyncContextManager[Any]]


class EvolutionScheduler:
    """Per-familiar timer chains: evolution cycles and hourly care decay.

    Each handler re-arms its own next run, so there is no global tick. A failed
    cycle still re-arms; only an absent or removed familiar ends its chain.
    """

    def __init__(
        self,
        jobs: JobScheduler,
        familiars: FamiliarRepository,
        care: CareSystem,
        mutations: MutationEngine,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = now_utc,
        rng: Optional[random.Random] = None,
        guard: Optional[Guard] = None,
    ) -> None:
        self.jobs = jobs
        self.familiars = familiars
        self.care = care
        self.mutations = mutations
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.rng = rng or random.Random()
        self.guard = guard

    def register(self) -> None:
        self.jobs.register(EVOLUTION_CYCLE_JOB, self._evolution_job)
        self.jobs.register(CARE_DECAY_JOB, self._care_decay_job)

    async def start(self, user_id: str) -> None:
        await self.schedule_evolution_cycle(user_id)
        await self.schedule_care_decay(user_id)

    async def schedule_evolution_cycle(self, user_id: str) -> datetime:
        low, high = self.settings.evolution_interval_minutes
        delay = timedelta(minutes=self.rng.uniform(low, high))
        run_at = self.clock() + delay
        await self.jobs.run_job(EVOLUTION_CYCLE_JOB, {"user_id": user_id}, run_at)
        logger.info("Scheduled evolution cycle for %s at %s (in %d minutes)", user_id, run_at.isoformat(), round(delay.total_seconds() / 60))
        return run_at

    async def schedule_care_decay(self, user_id: str) -> datetime:
        run_at = self.clock() + timedelta(minutes=self.settings.care_decay_interval_minutes)
        await self.jobs.run_job(CARE_DECAY_JOB, {"user_id": user_id}, run_at)
        logger.info("Scheduled care decay for %s at %s", user_id, run_at.isoformat())
        return run_at

    async def on_evolution_cycle(self, user_id: str) -> None:
        try:
            familiar = await self.familiars.get(user_id)
            if familiar is None:
                logger.info("Familiar not found for %s, skipping evolution cycle", user_id)
                return

            age = await self.familiars.increment_age(user_id)
            logger.info("Familiar %s aged to %s", familiar.id, age)

            await self.care.decay_care_meter(user_id)

            if await self.familiars.check_for_removal(user_id):
                logger.info("Familiar %s removed due to neglect", familiar.id)
                return

            if self.rng.random() < self.settings.uncontrolled_mutation_chance:
                try:
                    mutation = await self.mutations.generate_uncontrolled(user_id)
                    logger.info("Uncontrolled mutation applied to %s: %s", familiar.id, mutation.id)
                except Exception:
                    logger.exception("Uncontrolled mutation failed for %s", familiar.id)

            if age % self.settings.biome_change_interval == 0 and self.rng.random() < self.settings.biome_change_chance:
                await self.rotate_biome(user_id)
        except Exception:
            logger.exception("Evolution cycle failed for %s", user_id)

        try:
            await self.schedule_evolution_cycle(user_id)
        except Exception:
            logger.exception("Failed to schedule next evolution cycle for %s", user_id)

    async def on_care_decay(self, user_id: str) -> None:
        try:
            familiar = await self.familiars.get(user_id)
            if familiar is None:
                logger.info("Familiar not found for %s, skipping care decay", user_id)
                return

            meter = await self.care.decay_care_meter(user_id)
            logger.info("Care meter decayed for %s: %s -> %s", familiar.id, familiar.care_meter, meter)
            if await self.care.check_neglect_warning(user_id):
                logger.info("Neglect warning set for %s", familiar.id)
        except Exception:
            logger.exception("Care decay failed for %s", user_id)

        try:
            await self.schedule_care_decay(user_id)
        except Exception:
            logger.exception("Failed to schedule next care decay for %s", user_id)

    async def rotate_biome(self, user_id: str) -> Optional[Biome]:
        familiar = await self.familiars.get(user_id)
        if familiar is None:
            return None
        choices = [biome for biome in Biome if biome != familiar.biome]
        biome = self.rng.choice(choices)
        await self.familiars.set_biome(user_id, biome)
        logger.info("Biome changed for %s: %s -> %s", familiar.id, familiar.biome.value, biome.value)
        return biome

    async def _evolution_job(self, data: Dict[str, Any]) -> None:
        await self._guarded(str(data["user_id"]), self.on_evolution_cycle)

    async def _care_decay_job(self, data: Dict[str, Any]) -> None:
        await self._guarded(str(data["user_id"]), self.on_care_decay)

    async def _guarded(self, user_id: str, handler: Callable[[str], Any]) -> None:
        if self.guard is None:
            await handler(user_id)
            return
        async with self.guard(user_id):
            await handler(user_id)
