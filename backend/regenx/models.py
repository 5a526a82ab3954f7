from __future__ import annotations

import enum
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from . import config
from .timeutils import now_utc


UnitIntervalFloat = Annotated[float, Field(ge=0, le=1)]
CareMeterValue = Annotated[int, Field(ge=0, le=config.CARE_METER_MAX)]
StatValue = Annotated[int, Field(ge=0, le=100)]
TraitValue = Union[bool, int, float, str, Dict[str, Any]]
StatEffects = Dict[str, Dict[str, int]]


class Biome(str, enum.Enum):
    jungle = "jungle"
    rocky_mountain = "rocky_mountain"
    desert = "desert"
    ocean = "ocean"
    cave = "cave"


class CareAction(str, enum.Enum):
    feed = "feed"
    play = "play"
    attention = "attention"


class MutationType(str, enum.Enum):
    controlled = "controlled"
    uncontrolled = "uncontrolled"


class MutationCategory(str, enum.Enum):
    legs = "legs"
    color = "color"
    size = "size"
    appendage = "appendage"
    pattern = "pattern"


class MobilityStats(BaseModel):
    speed: StatValue = 50
    agility: StatValue = 50
    endurance: StatValue = 50


class SensesStats(BaseModel):
    vision: StatValue = 50
    hearing: StatValue = 50
    smell: StatValue = 50


class SurvivalStats(BaseModel):
    attack: StatValue = 50
    defense: StatValue = 50
    stealth: StatValue = 50


class CognitionStats(BaseModel):
    intelligence: StatValue = 50
    social: StatValue = 50
    adaptability: StatValue = 50


class VitalsStats(BaseModel):
    health: StatValue = 100
    happiness: StatValue = 100
    energy: StatValue = 100


class FamiliarStats(BaseModel):
    mobility: MobilityStats = Field(default_factory=MobilityStats)
    senses: SensesStats = Field(default_factory=SensesStats)
    survival: SurvivalStats = Field(default_factory=SurvivalStats)
    cognition: CognitionStats = Field(default_factory=CognitionStats)
    vitals: VitalsStats = Field(default_factory=VitalsStats)


class MutationTrait(BaseModel):
    category: MutationCategory
    value: TraitValue
    randomness_factor: UnitIntervalFloat


class MutationData(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: MutationType
    traits: List[MutationTrait]
    stat_effects: StatEffects = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=now_utc)


class TraitOption(BaseModel):
    id: str
    category: MutationCategory
    label: str
    value: TraitValue
    stat_effects: Optional[StatEffects] = None


class MutationChoice(BaseModel):
    session_id: str
    options: List[TraitOption]


class MutationChoiceSession(BaseModel):
    session_id: str
    familiar_id: str
    user_id: str
    options: List[TraitOption]
    created_at: datetime = Field(default_factory=now_utc)


class CompatibilityResult(BaseModel):
    compatible: bool
    conflicts: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class CareActionResult(BaseModel):
    care_meter: int
    evolution_points: int
    care_meter_increase: int
    evolution_points_gained: int


class Familiar(BaseModel):
    id: str
    user_id: str
    age: int = Field(default=0, ge=0)
    care_meter: CareMeterValue = config.CARE_METER_MAX
    evolution_points: int = Field(default=0, ge=0)
    mutations: List[MutationData] = Field(default_factory=list)
    stats: FamiliarStats = Field(default_factory=FamiliarStats)
    biome: Biome = Biome.jungle
    last_care_time: datetime = Field(default_factory=now_utc)
    created_at: datetime = Field(default_factory=now_utc)
    privacy_opt_in: bool = False
    neglect_warning: bool = False

    def category_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for mutation in self.mutations:
            for trait in mutation.traits:
                key = trait.category.value
                counts[key] = counts.get(key, 0) + 1
        return counts


class ActivityPattern(BaseModel):
    categories: Dict[str, int] = Field(default_factory=dict)
    dominant_category: str = "general"
    last_updated: Optional[datetime] = None


class TraitContext(BaseModel):
    stats: FamiliarStats
    recent_mutation_categories: List[MutationCategory] = Field(default_factory=list)
    biome: Biome
    activity_category: Optional[str] = None


class TraitOptionDescriptor(BaseModel):
    """Generator output; geometry, material and animation payloads ride along untouched."""

    model_config = ConfigDict(extra="allow")

    id: str
    category: str
    label: str
    value: TraitValue
    stat_effects: Optional[StatEffects] = None


class CareActionRequest(BaseModel):
    action: CareAction


class MutationChoiceRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=200)
    option_id: str = Field(min_length=1, max_length=100)


class PrivacyOptInRequest(BaseModel):
    opt_in: bool


class ActivityPostsRequest(BaseModel):
    subreddits: List[str] = Field(default_factory=list, max_length=100)


class EngineSettings(BaseModel):
    care_cooldown_seconds: int = Field(default=300, ge=0)
    decay_per_hour: int = Field(default=5, ge=0)
    removal_after_hours: float = Field(default=24.0, gt=0)
    archive_ttl_seconds: int = Field(default=30 * 24 * 60 * 60, gt=0)
    activity_ttl_seconds: int = Field(default=30 * 24 * 60 * 60, gt=0)
    session_ttl_seconds: int = Field(default=300, gt=0)
    mutation_cost: int = Field(default=100, ge=0)
    controlled_randomness: Tuple[float, float] = (0.85, 0.95)
    uncontrolled_randomness: Tuple[float, float] = (0.05, 0.15)
    uncontrolled_mutation_chance: UnitIntervalFloat = 0.2
    activity_bias_chance: UnitIntervalFloat = 0.3
    uncontrolled_max_attempts: int = Field(default=5, ge=1)
    suggestion_after_attempts: int = Field(default=3, ge=1)
    biome_change_interval: int = Field(default=10, ge=1)
    biome_change_chance: UnitIntervalFloat = 0.15
    evolution_interval_minutes: Tuple[float, float] = (30.0, 240.0)
    care_decay_interval_minutes: float = Field(default=60.0, gt=0)
    store_retries: int = Field(default=3, ge=1)
    store_retry_base_delay: float = Field(default=1.0, ge=0)
    scheduler_poll_seconds: float = Field(default=5.0, gt=0)
    data_dir: Optional[Path] = None
