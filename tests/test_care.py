from __future__ import annotations

import asyncio

import pytest

from regenx.care import CareSystem
from regenx.errors import CooldownError, FamiliarNotFoundError
from regenx.models import CareAction, EngineSettings


@pytest.mark.parametrize(
    ("action", "meter_gain", "points_gain"),
    [
        (CareAction.feed, 15, 10),
        (CareAction.play, 10, 15),
        (CareAction.attention, 5, 5),
    ],
)
def test_care_action_effects(engine, action, meter_gain, points_gain) -> None:
    async def scenario():
        await engine.familiars.create("u1")
        await engine.familiars.update_care_meter("u1", 50)
        return await engine.care.perform_care_action("u1", action)

    result = asyncio.run(scenario())

    assert result.care_meter == 50 + meter_gain
    assert result.evolution_points == points_gain
    assert result.care_meter_increase == meter_gain
    assert result.evolution_points_gained == points_gain


def test_care_meter_never_exceeds_maximum(engine) -> None:
    async def scenario():
        await engine.familiars.create("u1")
        await engine.familiars.update_care_meter("u1", 95)
        return await engine.care.perform_care_action("u1", CareAction.feed)

    assert asyncio.run(scenario()).care_meter == 100


def test_care_action_updates_last_care_time(engine, clock) -> None:
    async def scenario():
        await engine.familiars.create("u1")
        clock.advance(hours=3)
        await engine.care.perform_care_action("u1", CareAction.play)
        return await engine.familiars.get("u1")

    assert asyncio.run(scenario()).last_care_time == clock()


def test_repeated_action_is_on_cooldown(engine, clock) -> None:
    async def scenario():
        await engine.familiars.create("u1")
        await engine.care.perform_care_action("u1", CareAction.feed)
        clock.advance(seconds=120)
        await engine.care.perform_care_action("u1", CareAction.feed)

    with pytest.raises(CooldownError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.remaining_seconds == 180
    assert excinfo.value.status_code == 429
    assert excinfo.value.detail["action"] == "feed"


def test_cooldowns_are_per_action(engine) -> None:
    async def scenario():
        await engine.familiars.create("u1")
        await engine.care.perform_care_action("u1", CareAction.feed)
        play = await engine.care.perform_care_action("u1", CareAction.play)
        return play, await engine.care.cooldown_remaining("u1", CareAction.attention)

    play, attention_remaining = asyncio.run(scenario())

    assert play.evolution_points == 25
    assert attention_remaining == 0


def test_cooldown_elapses(engine, clock) -> None:
    async def scenario():
        await engine.familiars.create("u1")
        await engine.care.perform_care_action("u1", CareAction.feed)
        clock.advance(seconds=300)
        return await engine.care.perform_care_action("u1", CareAction.feed)

    assert asyncio.run(scenario()).evolution_points == 20


def test_zero_cooldown_setting_disables_cooldowns(engine) -> None:
    care = CareSystem(engine.store, engine.familiars, EngineSettings(care_cooldown_seconds=0), clock=engine.care.clock)

    async def scenario():
        await engine.familiars.create("u1")
        await care.perform_care_action("u1", CareAction.attention)
        return await care.perform_care_action("u1", CareAction.attention)

    assert asyncio.run(scenario()).evolution_points == 10


def test_care_for_missing_familiar(engine) -> None:
    with pytest.raises(FamiliarNotFoundError):
        asyncio.run(engine.care.perform_care_action("ghost", CareAction.feed))


def test_decay_after_ten_idle_hours(engine, clock) -> None:
    async def scenario():
        await engine.familiars.create("u1")
        clock.advance(hours=10)
        return await engine.care.decay_care_meter("u1")

    assert asyncio.run(scenario()) == 50


def test_decay_rounds_partial_hours_down(engine, clock) -> None:
    async def scenario():
        await engine.familiars.create("u1")
        clock.advance(minutes=90)
        return await engine.care.decay_care_meter("u1")

    assert asyncio.run(scenario()) == 93


def test_decay_bottoms_out_at_zero_and_warns(engine, clock) -> None:
    async def scenario():
        await engine.familiars.create("u1")
        clock.advance(hours=40)
        meter = await engine.care.decay_care_meter("u1")
        warned = await engine.care.check_neglect_warning("u1")
        return meter, warned, await engine.familiars.get("u1")

    meter, warned, familiar = asyncio.run(scenario())

    assert meter == 0
    assert warned is True
    assert familiar.neglect_warning is True


def test_healthy_familiar_gets_no_warning(engine) -> None:
    async def scenario():
        await engine.familiars.create("u1")
        return await engine.care.check_neglect_warning("u1")

    assert asyncio.run(scenario()) is False
