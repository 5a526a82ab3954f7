import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("REGENX_DATA_DIR", str(BASE_DIR / "data")))

STAT_BOUNDS = {
    "default": (0, 100),
}

CARE_ACTION_EFFECTS = {
    "feed": {"care_meter_increase": 15, "evolution_points_gained": 10},
    "play": {"care_meter_increase": 10, "evolution_points_gained": 15},
    "attention": {"care_meter_increase": 5, "evolution_points_gained": 5},
}

CARE_METER_MAX = 100
NEGLECT_THRESHOLD = 20

COMPATIBILITY_MATRIX = {
    "legs": ["color", "size", "pattern", "appendage"],
    "color": ["legs", "size", "pattern", "appendage"],
    "size": ["legs", "color", "pattern", "appendage"],
    "appendage": ["legs", "color", "size", "pattern"],
    "pattern": ["legs", "color", "size", "appendage"],
}

MAX_INSTANCES_PER_CATEGORY = {
    "legs": 1,
    "color": 3,
    "size": 1,
    "appendage": 4,
    "pattern": 2,
}

ACTIVITY_MUTATION_BIAS = {
    "gaming": ["appendage", "pattern", "color"],
    "nature": ["pattern", "color", "appendage"],
    "tech": ["pattern", "appendage", "size"],
    "art": ["color", "pattern", "size"],
    "animals": ["pattern", "appendage", "legs"],
    "science": ["size", "appendage", "pattern"],
    "general": ["legs", "color", "size", "appendage", "pattern"],
}

SUBREDDIT_KEYWORDS = {
    "animals": ["cats", "dogs", "aww", "animals", "pets", "birbs", "rabbits", "cat", "dog", "pet"],
    "gaming": ["gaming", "games", "pcgaming", "xbox", "playstation", "nintendo", "game"],
    "tech": ["programming", "technology", "coding", "webdev", "machinelearning", "tech", "code"],
    "nature": ["nature", "earthporn", "hiking", "outdoors", "camping", "hike", "outdoor"],
    "art": ["art", "drawing", "painting", "design", "photography", "draw", "paint"],
    "science": ["science", "space", "physics", "biology", "chemistry", "astronomy"],
}

DEFAULT_ENGINE_SETTINGS = {
    "care_cooldown_seconds": 300,
    "decay_per_hour": 5,
    "removal_after_hours": 24.0,
    "archive_ttl_seconds": 30 * 24 * 60 * 60,
    "activity_ttl_seconds": 30 * 24 * 60 * 60,
    "session_ttl_seconds": 300,
    "mutation_cost": 100,
    "controlled_randomness": (0.85, 0.95),
    "uncontrolled_randomness": (0.05, 0.15),
    "uncontrolled_mutation_chance": 0.2,
    "activity_bias_chance": 0.3,
    "uncontrolled_max_attempts": 5,
    "suggestion_after_attempts": 3,
    "biome_change_interval": 10,
    "biome_change_chance": 0.15,
    "evolution_interval_minutes": (30.0, 240.0),
    "care_decay_interval_minutes": 60.0,
    "store_retries": 3,
    "store_retry_base_delay": 1.0,
    "scheduler_poll_seconds": 5.0,
}

ENV_OVERRIDES = {
    "care_cooldown_seconds": "REGENX_CARE_COOLDOWN_SECONDS",
    "session_ttl_seconds": "REGENX_SESSION_TTL_SECONDS",
    "store_retries": "REGENX_STORE_RETRIES",
    "store_retry_base_delay": "REGENX_STORE_RETRY_BASE_DELAY",
    "scheduler_poll_seconds": "REGENX_SCHEDULER_POLL_SECONDS",
}

STORE_SNAPSHOT_PATH = DATA_DIR / "records.json"

FAMILIAR_KEY = "familiar:{user_id}"
ARCHIVED_FAMILIAR_KEY = "familiar:archived:{user_id}"
COOLDOWN_KEY = "cooldown:{familiar_id}:{action}"
SESSION_KEY = "mutation:choice:{familiar_id}:{token}"
ACTIVITY_KEY = "activity:{user_id}"
JOB_QUEUE_KEY = "scheduler:jobs"
JOB_PAYLOAD_KEY = "scheduler:payloads"
