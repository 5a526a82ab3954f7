from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator

import pytest

from regenx import services
from regenx.services import Engine, build_engine, load_engine_settings
from regenx.storage import RecordStore


class FakeClock:
    """Settable clock shared by the store, the engine and the tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: Any) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def backend(clock: FakeClock) -> RecordStore:
    return RecordStore(clock=clock)


@pytest.fixture
def engine(backend: RecordStore, clock: FakeClock, rng: random.Random, monkeypatch: pytest.MonkeyPatch) -> Iterator[Engine]:
    for env_name in ("REGENX_CARE_COOLDOWN_SECONDS", "REGENX_SESSION_TTL_SECONDS", "REGENX_STORE_RETRIES"):
        monkeypatch.delenv(env_name, raising=False)
    settings = load_engine_settings(store_retry_base_delay=0)
    built = build_engine(settings, backend=backend, clock=clock, rng=rng)
    services.set_engine(built)
    yield built
    services.set_engine(None)

