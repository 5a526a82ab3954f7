from __future__ import annotations

import asyncio
import logging
import os
import random
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import config
from .activity import ActivityTracker
from .care import CareSystem
from .errors import FamiliarNotFoundError, SessionExpiredError, ValidationError
from .evolution import CARE_DECAY_JOB, EVOLUTION_CYCLE_JOB, EvolutionScheduler
from .familiars import FamiliarRepository
from .jobs import JobScheduler
from .models import (
    ActivityPattern,
    CareAction,
    CareActionResult,
    EngineSettings,
    Familiar,
    MutationChoice,
    MutationChoiceSession,
    MutationData,
)
from .mutations import MutationEngine
from .storage import RecordStore, StoreAdapter
from .timeutils import now_utc
from .traits import TraitGenerator

logger = logging.getLogger(__name__)

USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_:\-]+$")
OPTION_ID_PATTERN = re.compile(r"^[a-z0-9_\-]+$")


class FamiliarLocks:
    """One ``asyncio.Lock`` per user so a familiar has a single writer at a time."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def __call__(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock


@dataclass
class Engine:
    settings: EngineSettings
    store: StoreAdapter
    familiars: FamiliarRepository
    care: CareSystem
    activity: ActivityTracker
    mutations: MutationEngine
    jobs: JobScheduler
    evolution: EvolutionScheduler
    locks: FamiliarLocks


def load_engine_settings(**overrides: Any) -> EngineSettings:
    payload: Dict[str, Any] = dict(config.DEFAULT_ENGINE_SETTINGS)
    for field, env_name in config.ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw not in (None, ""):
            payload[field] = raw
    payload.update(overrides)
    return EngineSettings.model_validate(payload)


def build_engine(
    settings: Optional[EngineSettings] = None,
    *,
    backend: Optional[RecordStore] = None,
    clock: Callable[[], datetime] = now_utc,
    rng: Optional[random.Random] = None,
    trait_generator: Optional[TraitGenerator] = None,
) -> Engine:
    settings = settings or load_engine_settings()
    rng = rng or random.Random()
    if backend is None:
        snapshot = settings.data_dir / config.STORE_SNAPSHOT_PATH.name if settings.data_dir else None
        backend = RecordStore(snapshot_path=snapshot, clock=clock)
    store = StoreAdapter(backend, retries=settings.store_retries, base_delay=settings.store_retry_base_delay)
    locks = FamiliarLocks()

    familiars = FamiliarRepository(store, settings, clock=clock, rng=rng)
    care = CareSystem(store, familiars, settings, clock=clock)
    activity = ActivityTracker(store, settings, clock=clock)
    mutations = MutationEngine(
        store,
        familiars,
        activity=activity,
        trait_generator=trait_generator,
        settings=settings,
        clock=clock,
        rng=rng,
    )
    jobs = JobScheduler(store, clock=clock)
    evolution = EvolutionScheduler(jobs, familiars, care, mutations, settings, clock=clock, rng=rng, guard=locks)
    evolution.register()
    return Engine(
        settings=settings,
        store=store,
        familiars=familiars,
        care=care,
        activity=activity,
        mutations=mutations,
        jobs=jobs,
        evolution=evolution,
        locks=locks,
    )


_ENGINE: Optional[Engine] = None


def get_engine() -> Engine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = build_engine(load_engine_settings(data_dir=config.DATA_DIR))
    return _ENGINE


def set_engine(engine: Optional[Engine]) -> None:
    global _ENGINE
    _ENGINE = engine


def _validate_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str):
        raise ValidationError("User ID must be a string")
    candidate = user_id.strip()
    if not candidate:
        raise ValidationError("User ID cannot be empty")
    if len(candidate) > 200:
        raise ValidationError("User ID is too long")
    if not USER_ID_PATTERN.match(candidate):
        raise ValidationError("User ID contains invalid characters")
    return candidate


def _validate_option_id(option_id: Any) -> str:
    if not isinstance(option_id, str):
        raise ValidationError("Mutation option ID must be a string")
    candidate = option_id.strip()
    if not candidate:
        raise ValidationError("Mutation option ID cannot be empty")
    if len(candidate) > 100:
        raise ValidationError("Mutation option ID is too long")
    if not OPTION_ID_PATTERN.match(candidate):
        raise ValidationError("Mutation option ID contains invalid characters")
    return candidate


def _validate_session_id(session_id: Any) -> str:
    if not isinstance(session_id, str) or not session_id.strip():
        raise ValidationError("Mutation session ID cannot be empty")
    candidate = session_id.strip()
    if len(candidate) > 200 or not USER_ID_PATTERN.match(candidate):
        raise ValidationError("Mutation session ID is invalid")
    return candidate


def _validate_care_action(action: Any) -> CareAction:
    try:
        return CareAction(action)
    except ValueError:
        allowed = ", ".join(item.value for item in CareAction)
        raise ValidationError(f"Invalid care action: {action}. Must be one of: {allowed}") from None


async def create_familiar(user_id: str, engine: Optional[Engine] = None) -> Familiar:
    engine = engine or get_engine()
    user_id = _validate_user_id(user_id)
    async with engine.locks(user_id):
        existing = await engine.familiars.get(user_id)
        if existing is not None:
            return existing
        familiar = await engine.familiars.create(user_id)
        await engine.evolution.start(user_id)
        return familiar


async def get_familiar(user_id: str, engine: Optional[Engine] = None) -> Familiar:
    engine = engine or get_engine()
    user_id = _validate_user_id(user_id)
    return await engine.familiars.require(user_id)


async def get_familiar_overview(user_id: str, engine: Optional[Engine] = None) -> Dict[str, Any]:
    engine = engine or get_engine()
    familiar = await get_familiar(user_id, engine)
    cooldowns = {action.value: await engine.care.cooldown_remaining(familiar.user_id, action) for action in CareAction}
    next_cycle = await engine.jobs.next_run(EVOLUTION_CYCLE_JOB, familiar.user_id)
    next_decay = await engine.jobs.next_run(CARE_DECAY_JOB, familiar.user_id)
    return {
        "familiar": familiar.model_dump(mode="json"),
        "cooldowns": cooldowns,
        "next_evolution_cycle": next_cycle.isoformat() if next_cycle else None,
        "next_care_decay": next_decay.isoformat() if next_decay else None,
    }


async def perform_care_action(user_id: str, action: Any, engine: Optional[Engine] = None) -> CareActionResult:
    engine = engine or get_engine()
    user_id = _validate_user_id(user_id)
    care_action = _validate_care_action(action)
    async with engine.locks(user_id):
        return await engine.care.perform_care_action(user_id, care_action)


async def trigger_mutation(user_id: str, engine: Optional[Engine] = None) -> MutationChoice:
    engine = engine or get_engine()
    user_id = _validate_user_id(user_id)
    async with engine.locks(user_id):
        return await engine.mutations.trigger(user_id)


async def choose_mutation(session_id: str, option_id: str, engine: Optional[Engine] = None) -> MutationData:
    engine = engine or get_engine()
    session_id = _validate_session_id(session_id)
    option_id = _validate_option_id(option_id)

    raw = await engine.store.get(session_id)
    if not raw:
        raise SessionExpiredError(session_id)
    owner = MutationChoiceSession.model_validate_json(raw).user_id
    async with engine.locks(owner):
        return await engine.mutations.choose(session_id, option_id)


async def set_privacy_opt_in(user_id: str, opt_in: bool, engine: Optional[Engine] = None) -> Familiar:
    engine = engine or get_engine()
    user_id = _validate_user_id(user_id)
    async with engine.locks(user_id):
        familiar = await engine.familiars.set_privacy_opt_in(user_id, opt_in)
        if not opt_in:
            await engine.activity.clear(user_id)
        logger.info("Privacy opt-in for %s set to %s", familiar.id, opt_in)
        return familiar


async def record_activity(user_id: str, subreddits: List[str], engine: Optional[Engine] = None) -> ActivityPattern:
    engine = engine or get_engine()
    user_id = _validate_user_id(user_id)
    if await engine.familiars.get(user_id) is None:
        raise FamiliarNotFoundError(user_id)
    pattern = await engine.activity.record_posts(user_id, subreddits)
    return pattern or ActivityPattern()


async def run_evolution_cycle(user_id: str, engine: Optional[Engine] = None) -> Familiar:
    engine = engine or get_engine()
    user_id = _validate_user_id(user_id)
    async with engine.locks(user_id):
        await engine.evolution.on_evolution_cycle(user_id)
        familiar = await engine.familiars.get(user_id)
        if familiar is None:
            raise FamiliarNotFoundError(user_id)
        # A manual cycle also restores a decay chain lost to a store outage.
        if await engine.jobs.next_run(CARE_DECAY_JOB, user_id) is None:
            await engine.evolution.schedule_care_decay(user_id)
    return familiar


async def run_due_jobs(engine: Optional[Engine] = None) -> int:
    engine = engine or get_engine()
    return await engine.jobs.run_due()
