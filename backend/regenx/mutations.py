"""Controlled and uncontrolled mutations.

Every mutation category is a ``MutationCategory`` member, and each per-category
table below (option menu, random value pool, stat-effect rule) is checked at
import time to cover every member, so a new category cannot silently fall
through to default behaviour.
"""

from __future__ import annotations

import logging
import random
import uuid
from datetime import datetime
from typing import Callable, Collection, Dict, List, Mapping, Optional, TypeVar

from . import config
from .activity import ActivityTracker
from .errors import (
    InsufficientPointsError,
    InvalidOptionError,
    MutationConflictError,
    NoCompatibleMutationError,
    SessionExpiredError,
)
from .familiars import FamiliarRepository
from .models import (
    ActivityPattern,
    CompatibilityResult,
    EngineSettings,
    Familiar,
    MutationCategory,
    MutationChoice,
    MutationChoiceSession,
    MutationData,
    MutationTrait,
    MutationType,
    StatEffects,
    TraitOption,
    TraitValue,
)
from .stats import merge_effects
from .storage import StoreAdapter
from .timeutils import now_utc
from .traits import TraitGenerator, build_trait_context, options_from_descriptors

logger = logging.getLogger(__name__)

R = TypeVar("R")


def _exhaustive(registry: Mapping[MutationCategory, R], name: str) -> Dict[MutationCategory, R]:
    missing = set(MutationCategory) - set(registry)
    if missing:
        raise RuntimeError(f"{name} is missing categories: {sorted(item.value for item in missing)}")
    return dict(registry)


def _option(category: MutationCategory, slug: str, label: str, value: TraitValue) -> TraitOption:
    return TraitOption(id=f"{category.value}_{slug}", category=category, label=label, value=value)


TRAIT_MENUS = _exhaustive(
    {
        MutationCategory.legs: [
            _option(MutationCategory.legs, "2", "2 Legs", 2),
            _option(MutationCategory.legs, "4", "4 Legs", 4),
            _option(MutationCategory.legs, "6", "6 Legs", 6),
            _option(MutationCategory.legs, "8", "8 Legs", 8),
        ],
        MutationCategory.color: [
            _option(MutationCategory.color, "red", "Red", "#ff0000"),
            _option(MutationCategory.color, "blue", "Blue", "#0000ff"),
            _option(MutationCategory.color, "green", "Green", "#00ff00"),
            _option(MutationCategory.color, "purple", "Purple", "#ff00ff"),
            _option(MutationCategory.color, "gold", "Gold", "#ffd700"),
        ],
        MutationCategory.size: [
            _option(MutationCategory.size, "tiny", "Tiny", 0.5),
            _option(MutationCategory.size, "small", "Small", 0.75),
            _option(MutationCategory.size, "medium", "Medium", 1.0),
            _option(MutationCategory.size, "large", "Large", 1.5),
            _option(MutationCategory.size, "giant", "Giant", 2.0),
        ],
        MutationCategory.appendage: [
            _option(MutationCategory.appendage, "tail", "Tail", "tail"),
            _option(MutationCategory.appendage, "wings", "Wings", "wings"),
            _option(MutationCategory.appendage, "horns", "Horns", "horns"),
            _option(MutationCategory.appendage, "tentacles", "Tentacles", "tentacles"),
        ],
        MutationCategory.pattern: [
            _option(MutationCategory.pattern, "spots", "Spots", "spots"),
            _option(MutationCategory.pattern, "stripes", "Stripes", "stripes"),
            _option(MutationCategory.pattern, "scales", "Scales", "scales"),
            _option(MutationCategory.pattern, "fur", "Fur", "fur"),
        ],
    },
    "TRAIT_MENUS",
)

RANDOM_VALUE_POOLS = _exhaustive(
    {
        MutationCategory.legs: [2, 4, 6, 8],
        MutationCategory.color: ["#ff0000", "#0000ff", "#00ff00", "#ff00ff", "#ffd700", "#ff8800", "#00ffff"],
        MutationCategory.size: [0.5, 0.75, 1.0, 1.5, 2.0],
        MutationCategory.appendage: ["tail", "wings", "horns", "tentacles"],
        MutationCategory.pattern: ["spots", "stripes", "scales", "fur"],
    },
    "RANDOM_VALUE_POOLS",
)


def _legs_effects(value: TraitValue) -> StatEffects:
    count = float(value)
    if count <= 4:
        return {"mobility": {"speed": 10, "agility": 15 if count == 2 else 10}}
    return {"mobility": {"speed": -5, "agility": 5}}


def _size_effects(value: TraitValue) -> StatEffects:
    if float(value) > 1.0:
        return {"survival": {"attack": 20, "defense": 15}, "mobility": {"speed": -10}}
    return {"survival": {"attack": -10, "defense": -5}, "mobility": {"speed": 15, "agility": 10}}


APPENDAGE_EFFECTS: Dict[str, StatEffects] = {
    "wings": {"mobility": {"speed": 20, "agility": 15}},
    "tail": {"mobility": {"agility": 10}, "survival": {"defense": 5}},
    "horns": {"survival": {"attack": 15, "defense": 10}},
    "tentacles": {"mobility": {"agility": 12}, "survival": {"attack": 8}},
}

PATTERN_EFFECTS: Dict[str, StatEffects] = {
    "scales": {"survival": {"defense": 15}},
    "fur": {"survival": {"defense": 10}, "vitals": {"energy": 5}},
    "spots": {"survival": {"stealth": 10}},
    "stripes": {"survival": {"stealth": 12}, "senses": {"vision": 5}},
}


EFFECT_RULES: Dict[MutationCategory, Callable[[TraitValue], StatEffects]] = _exhaustive(
    {
        MutationCategory.legs: _legs_effects,
        MutationCategory.size: _size_effects,
        MutationCategory.appendage: lambda value: APPENDAGE_EFFECTS.get(str(value), {}),
        MutationCategory.pattern: lambda value: PATTERN_EFFECTS.get(str(value), {}),
        MutationCategory.color: lambda value: {"vitals": {"happiness": 5}},
    },
    "EFFECT_RULES",
)


def calculate_stat_effects(trait: MutationTrait) -> StatEffects:
    rule = EFFECT_RULES[trait.category]
    return {category: dict(changes) for category, changes in rule(trait.value).items()}


def apply_randomness(value: TraitValue, factor: float, rng: random.Random) -> TraitValue:
    """Offset numeric values by up to ``value * (1 - factor)`` either way."""

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    variance = value * (1 - factor)
    return value + (rng.random() - 0.5) * variance * 2


def evaluate_compatibility(category_counts: Mapping[str, int], candidate: str) -> CompatibilityResult:
    present = {category for category, count in category_counts.items() if count > 0}
    conflicts: List[str] = []

    compatible_with = config.COMPATIBILITY_MATRIX.get(candidate)
    if compatible_with is None:
        conflicts.append(f"Unknown mutation category: {candidate}")
        return CompatibilityResult(compatible=False, conflicts=conflicts, suggestions=suggest_alternatives(present))

    for existing in sorted(present):
        if existing not in compatible_with:
            conflicts.append(f"{candidate} is not compatible with existing {existing} mutation")

    limit = config.MAX_INSTANCES_PER_CATEGORY.get(candidate, 1)
    if category_counts.get(candidate, 0) >= limit:
        conflicts.append(f"Maximum {limit} {candidate} mutation(s) already applied")

    suggestions = suggest_alternatives(present) if conflicts else []
    return CompatibilityResult(compatible=not conflicts, conflicts=conflicts, suggestions=suggestions)


def suggest_alternatives(present: Collection[str]) -> List[str]:
    suggestions = []
    for category, compatible_with in config.COMPATIBILITY_MATRIX.items():
        if category in present:
            continue
        if all(existing in compatible_with for existing in present):
            suggestions.append(category)
    return suggestions


class MutationEngine:
    def __init__(
        self,
        store: StoreAdapter,
        familiars: FamiliarRepository,
        activity: Optional[ActivityTracker] = None,
        trait_generator: Optional[TraitGenerator] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = now_utc,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.familiars = familiars
        self.activity = activity
        self.trait_generator = trait_generator
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.rng = rng or random.Random()

    async def check_compatibility(self, user_id: str, category: str) -> CompatibilityResult:
        familiar = await self.familiars.get(user_id)
        counts = familiar.category_counts() if familiar is not None else {}
        return evaluate_compatibility(counts, category)

    def generate_trait_options(self, category: Optional[MutationCategory] = None) -> List[TraitOption]:
        chosen = category or self.rng.choice(list(MutationCategory))
        return [option.model_copy() for option in TRAIT_MENUS[chosen]]

    def generate_random_trait(self, category: MutationCategory, factor: float) -> MutationTrait:
        base = self.rng.choice(RANDOM_VALUE_POOLS[category])
        return MutationTrait(category=category, value=apply_randomness(base, factor, self.rng), randomness_factor=factor)

    async def trigger(self, user_id: str) -> MutationChoice:
        familiar = await self.familiars.require(user_id)
        cost = self.settings.mutation_cost
        if familiar.evolution_points < cost:
            raise InsufficientPointsError(familiar.evolution_points, cost)

        # Spent on trigger; an abandoned or expired session is not refunded.
        await self.familiars.adjust_evolution_points(user_id, -cost)

        options = await self._options_for(familiar)
        session = MutationChoiceSession(
            session_id=config.SESSION_KEY.format(familiar_id=familiar.id, token=uuid.uuid4().hex),
            familiar_id=familiar.id,
            user_id=user_id,
            options=options,
            created_at=self.clock(),
        )
        await self.store.set(session.session_id, session.model_dump_json(), ttl_seconds=self.settings.session_ttl_seconds)
        logger.info("Opened mutation session %s with %s options", session.session_id, len(options))
        return MutationChoice(session_id=session.session_id, options=options)

    async def choose(self, session_id: str, option_id: str) -> MutationData:
        raw = await self.store.get(session_id)
        if not raw:
            raise SessionExpiredError(session_id)
        session = MutationChoiceSession.model_validate_json(raw)

        option = next((item for item in session.options if item.id == option_id), None)
        if option is None:
            raise InvalidOptionError(option_id)

        familiar = await self.familiars.require(session.user_id)
        compatibility = evaluate_compatibility(familiar.category_counts(), option.category.value)
        if not compatibility.compatible:
            raise MutationConflictError(compatibility.conflicts, compatibility.suggestions)

        factor = self.rng.uniform(*self.settings.controlled_randomness)
        trait = MutationTrait(
            category=option.category,
            value=apply_randomness(option.value, factor, self.rng),
            randomness_factor=factor,
        )
        effects = option.stat_effects if option.stat_effects is not None else calculate_stat_effects(trait)
        mutation = self._build_mutation(MutationType.controlled, [trait], effects)
        await self.familiars.append_mutation(session.user_id, mutation)
        await self.store.delete(session_id)
        logger.info("Applied controlled mutation %s (%s) to %s", mutation.id, option.id, familiar.id)
        return mutation

    async def generate_uncontrolled(self, user_id: str) -> MutationData:
        familiar = await self.familiars.require(user_id)
        pattern = await self._activity_pattern(familiar)
        counts = familiar.category_counts()

        chosen: Optional[MutationCategory] = None
        attempts = 0
        while attempts < self.settings.uncontrolled_max_attempts:
            candidate = self._select_category(pattern)
            result = evaluate_compatibility(counts, candidate.value)
            if result.compatible:
                chosen = candidate
                break
            attempts += 1
            if attempts >= self.settings.suggestion_after_attempts and result.suggestions:
                chosen = MutationCategory(self.rng.choice(result.suggestions))
                break

        if chosen is None:
            logger.info("No compatible mutation for %s after %s attempts", familiar.id, attempts)
            raise NoCompatibleMutationError("No compatible mutations available")

        factor = self.rng.uniform(*self.settings.uncontrolled_randomness)
        trait = self.generate_random_trait(chosen, factor)
        mutation = self._build_mutation(MutationType.uncontrolled, [trait], calculate_stat_effects(trait))
        await self.familiars.append_mutation(user_id, mutation)
        logger.info("Applied uncontrolled %s mutation %s to %s", chosen.value, mutation.id, familiar.id)
        return mutation

    def _select_category(self, pattern: Optional[ActivityPattern]) -> MutationCategory:
        if pattern is not None and self.rng.random() < self.settings.activity_bias_chance:
            shortlist = config.ACTIVITY_MUTATION_BIAS.get(pattern.dominant_category, config.ACTIVITY_MUTATION_BIAS["general"])
            return MutationCategory(self.rng.choice(shortlist))
        return self.rng.choice(list(MutationCategory))

    async def _activity_pattern(self, familiar: Familiar) -> Optional[ActivityPattern]:
        if not familiar.privacy_opt_in or self.activity is None:
            return None
        try:
            return await self.activity.get_pattern(familiar.user_id)
        except Exception:
            logger.exception("Activity pattern lookup failed for %s", familiar.id)
            return None

    async def _options_for(self, familiar: Familiar) -> List[TraitOption]:
        if self.trait_generator is not None:
            pattern = await self._activity_pattern(familiar)
            context = build_trait_context(familiar, pattern.dominant_category if pattern else None)
            try:
                options = options_from_descriptors(await self.trait_generator.generate_options(context))
            except Exception:
                logger.exception("Trait generator failed for %s; using the fixed menu", familiar.id)
                options = []
            if options:
                return options
        return self.generate_trait_options()

    def _build_mutation(self, kind: MutationType, traits: List[MutationTrait], effects: StatEffects) -> MutationData:
        return MutationData(
            id=f"mut:{uuid.uuid4().hex}",
            type=kind,
            traits=traits,
            stat_effects=merge_effects(effects),
            timestamp=self.clock(),
        )
