from __future__ import annotations

import asyncio
import random
from typing import List

import pytest

from regenx import config
from regenx.errors import (
    InsufficientPointsError,
    InvalidOptionError,
    MutationConflictError,
    NoCompatibleMutationError,
    SessionExpiredError,
    StoreUnavailableError,
)
from regenx.models import (
    CareAction,
    FamiliarStats,
    MutationCategory,
    MutationData,
    MutationTrait,
    MutationType,
    TraitContext,
    TraitOptionDescriptor,
)
from regenx.mutations import (
    TRAIT_MENUS,
    apply_randomness,
    calculate_stat_effects,
    evaluate_compatibility,
    suggest_alternatives,
)
from regenx.stats import apply_stat_effects


class StubGenerator:
    def __init__(self, descriptors: List[TraitOptionDescriptor], fail: bool = False) -> None:
        self.descriptors = descriptors
        self.fail = fail
        self.contexts: List[TraitContext] = []

    async def generate_options(self, context: TraitContext) -> List[TraitOptionDescriptor]:
        self.contexts.append(context)
        if self.fail:
            raise TimeoutError("generator timed out")
        return self.descriptors


def _descriptor(option_id: str, category: str, value, **extra) -> TraitOptionDescriptor:
    return TraitOptionDescriptor(id=option_id, category=category, label=option_id.title(), value=value, **extra)


def _mutation(category: MutationCategory, value) -> MutationData:
    return MutationData(
        id=f"mut:{category.value}",
        type=MutationType.uncontrolled,
        traits=[MutationTrait(category=category, value=value, randomness_factor=0.1)],
    )


async def _familiar_with_points(engine, user_id: str = "u1", points: int = 100):
    await engine.familiars.create(user_id)
    await engine.familiars.adjust_evolution_points(user_id, points)
    return await engine.familiars.get(user_id)


def test_every_category_is_compatible_with_the_others() -> None:
    for category in MutationCategory:
        others = {item.value for item in MutationCategory if item != category}
        assert set(config.COMPATIBILITY_MATRIX[category.value]) == others


def test_instance_limit_blocks_extra_legs() -> None:
    result = evaluate_compatibility({"legs": 1, "color": 2}, "legs")

    assert result.compatible is False
    assert result.conflicts == [
        "legs is not compatible with existing legs mutation",
        "Maximum 1 legs mutation(s) already applied",
    ]
    assert result.suggestions == ["size", "appendage", "pattern"]


def test_a_category_blocks_another_of_its_kind() -> None:
    result = evaluate_compatibility({"color": 1}, "color")

    assert result.compatible is False
    assert result.conflicts == ["color is not compatible with existing color mutation"]
    assert result.suggestions == ["legs", "size", "appendage", "pattern"]
    assert evaluate_compatibility({"color": 0, "legs": 1}, "color").compatible is True


def test_unknown_category_is_a_conflict() -> None:
    result = evaluate_compatibility({}, "wheels")

    assert result.compatible is False
    assert result.conflicts == ["Unknown mutation category: wheels"]
    assert result.suggestions == ["legs", "color", "size", "appendage", "pattern"]


def test_suggestions_skip_present_categories() -> None:
    assert suggest_alternatives({"legs", "size"}) == ["color", "appendage", "pattern"]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (2, {"mobility": {"speed": 10, "agility": 15}}),
        (2.3, {"mobility": {"speed": 10, "agility": 10}}),
        (4, {"mobility": {"speed": 10, "agility": 10}}),
        (4.3, {"mobility": {"speed": -5, "agility": 5}}),
        (3.6, {"mobility": {"speed": 10, "agility": 10}}),
        (5.6, {"mobility": {"speed": -5, "agility": 5}}),
        (8, {"mobility": {"speed": -5, "agility": 5}}),
    ],
)
def test_leg_effects_follow_the_randomized_count(value, expected) -> None:
    trait = MutationTrait(category=MutationCategory.legs, value=value, randomness_factor=0.9)

    assert calculate_stat_effects(trait) == expected


def test_size_and_cosmetic_effects() -> None:
    big = MutationTrait(category=MutationCategory.size, value=1.5, randomness_factor=0.9)
    small = MutationTrait(category=MutationCategory.size, value=1.0, randomness_factor=0.9)
    color = MutationTrait(category=MutationCategory.color, value="#ffd700", randomness_factor=0.9)
    stripes = MutationTrait(category=MutationCategory.pattern, value="stripes", randomness_factor=0.9)

    assert calculate_stat_effects(big) == {"survival": {"attack": 20, "defense": 15}, "mobility": {"speed": -10}}
    assert calculate_stat_effects(small) == {"survival": {"attack": -10, "defense": -5}, "mobility": {"speed": 15, "agility": 10}}
    assert calculate_stat_effects(color) == {"vitals": {"happiness": 5}}
    assert calculate_stat_effects(stripes) == {"survival": {"stealth": 12}, "senses": {"vision": 5}}


def test_randomness_only_touches_numbers() -> None:
    rng = random.Random(7)

    assert apply_randomness("wings", 0.1, rng) == "wings"
    assert apply_randomness(True, 0.1, rng) is True
    for _ in range(200):
        value = apply_randomness(2.0, 0.9, rng)
        assert 1.8 <= value <= 2.2


def test_repeated_effects_never_escape_bounds() -> None:
    rng = random.Random(99)
    stats = FamiliarStats()
    for _ in range(500):
        category = rng.choice(list(MutationCategory))
        value = rng.choice([option.value for option in TRAIT_MENUS[category]])
        trait = MutationTrait(category=category, value=value, randomness_factor=0.5)
        effects = calculate_stat_effects(trait)
        effects.setdefault("vitals", {})["health"] = rng.randint(-60, 60)
        stats = apply_stat_effects(stats, effects)
        for group in stats.model_dump().values():
            for number in group.values():
                assert 0 <= number <= 100


def test_trigger_requires_enough_points(engine) -> None:
    asyncio.run(_familiar_with_points(engine, points=10))

    with pytest.raises(InsufficientPointsError) as excinfo:
        asyncio.run(engine.mutations.trigger("u1"))

    assert excinfo.value.available == 10
    assert excinfo.value.required == 100
    assert asyncio.run(engine.familiars.get("u1")).evolution_points == 10


def test_trigger_spends_points_and_opens_a_session(engine) -> None:
    async def scenario():
        await _familiar_with_points(engine, points=130)
        choice = await engine.mutations.trigger("u1")
        ttl = await engine.store.ttl(choice.session_id)
        return choice, ttl, await engine.familiars.get("u1")

    choice, ttl, familiar = asyncio.run(scenario())

    assert familiar.evolution_points == 30
    assert 3 <= len(choice.options) <= 5
    assert len({option.category for option in choice.options}) == 1
    assert choice.session_id.startswith("mutation:choice:familiar:u1:")
    assert ttl == pytest.approx(300)


def test_care_to_mutation_scenario(engine, clock) -> None:
    async def scenario():
        created = await engine.familiars.create("u1")
        first = await engine.care.perform_care_action("u1", CareAction.feed)
        with pytest.raises(InsufficientPointsError):
            await engine.mutations.trigger("u1")
        for _ in range(9):
            clock.advance(seconds=300)
            await engine.care.perform_care_action("u1", CareAction.feed)
        choice = await engine.mutations.trigger("u1")
        after_trigger = await engine.familiars.get("u1")
        mutation = await engine.mutations.choose(choice.session_id, choice.options[0].id)
        return created, first, after_trigger, mutation, await engine.familiars.get("u1")

    created, first, after_trigger, mutation, final = asyncio.run(scenario())

    assert (created.care_meter, created.evolution_points, created.age) == (100, 0, 0)
    assert (first.care_meter, first.evolution_points) == (100, 10)
    assert after_trigger.evolution_points == 0
    assert final.evolution_points == 0
    assert [item.id for item in final.mutations] == [mutation.id]
    assert mutation.type == MutationType.controlled
    assert 0.85 <= mutation.traits[0].randomness_factor <= 0.95
    assert final.stats == apply_stat_effects(created.stats, mutation.stat_effects)


def test_session_is_single_use(engine) -> None:
    async def scenario():
        await _familiar_with_points(engine)
        choice = await engine.mutations.trigger("u1")
        await engine.mutations.choose(choice.session_id, choice.options[0].id)
        await engine.mutations.choose(choice.session_id, choice.options[1].id)

    with pytest.raises(SessionExpiredError):
        asyncio.run(scenario())

    assert len(asyncio.run(engine.familiars.get("u1")).mutations) == 1


def test_session_expires(engine, clock) -> None:
    async def scenario():
        await _familiar_with_points(engine)
        choice = await engine.mutations.trigger("u1")
        clock.advance(seconds=301)
        await engine.mutations.choose(choice.session_id, choice.options[0].id)

    with pytest.raises(SessionExpiredError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.status_code == 410


def test_unknown_option_keeps_the_session(engine) -> None:
    async def scenario():
        await _familiar_with_points(engine)
        choice = await engine.mutations.trigger("u1")
        with pytest.raises(InvalidOptionError):
            await engine.mutations.choose(choice.session_id, "legs_12")
        await engine.mutations.choose(choice.session_id, choice.options[0].id)
        return await engine.familiars.get("u1")

    assert len(asyncio.run(scenario()).mutations) == 1


def test_failed_write_leaves_the_session_open(engine, monkeypatch: pytest.MonkeyPatch) -> None:
    original = engine.familiars.append_mutation
    attempts = []

    async def flaky_append(user_id, mutation):
        attempts.append(mutation.id)
        if len(attempts) == 1:
            raise StoreUnavailableError("Record store unavailable: store offline")
        return await original(user_id, mutation)

    monkeypatch.setattr(engine.familiars, "append_mutation", flaky_append)

    async def scenario():
        await _familiar_with_points(engine)
        choice = await engine.mutations.trigger("u1")
        with pytest.raises(StoreUnavailableError):
            await engine.mutations.choose(choice.session_id, choice.options[0].id)
        still_open = await engine.store.get(choice.session_id)
        await engine.mutations.choose(choice.session_id, choice.options[0].id)
        return still_open, await engine.store.get(choice.session_id), await engine.familiars.get("u1")

    still_open, after, familiar = asyncio.run(scenario())

    assert still_open is not None
    assert after is None
    assert len(attempts) == 2
    assert len(familiar.mutations) == 1


def test_incompatible_choice_is_rejected(engine) -> None:
    generator = StubGenerator(
        [
            _descriptor("legs_two", "legs", 2),
            _descriptor("legs_four", "legs", 4),
            _descriptor("legs_six", "legs", 6),
        ]
    )
    engine.mutations.trait_generator = generator

    async def scenario():
        await _familiar_with_points(engine)
        await engine.familiars.append_mutation("u1", _mutation(MutationCategory.legs, 4))
        choice = await engine.mutations.trigger("u1")
        with pytest.raises(MutationConflictError) as excinfo:
            await engine.mutations.choose(choice.session_id, "legs_two")
        still_open = await engine.store.get(choice.session_id)
        return excinfo.value, still_open, await engine.familiars.get("u1")

    error, still_open, familiar = asyncio.run(scenario())

    assert error.status_code == 409
    assert error.conflicts == [
        "legs is not compatible with existing legs mutation",
        "Maximum 1 legs mutation(s) already applied",
    ]
    assert error.suggestions == ["color", "size", "appendage", "pattern"]
    assert "Try these instead" in error.message
    assert still_open is not None
    assert familiar.category_counts() == {"legs": 1}


def test_generator_options_are_used_with_their_effects(engine) -> None:
    generator = StubGenerator(
        [
            _descriptor("glow_fur", "pattern", "fur", stat_effects={"vitals": {"energy": 9}}, material={"emissive": 1}),
            _descriptor("ember_tail", "appendage", "tail"),
            _descriptor("sky_blue", "color", "#00ffff"),
            _descriptor("wheel", "wheels", 3),
        ]
    )
    engine.mutations.trait_generator = generator

    async def scenario():
        await _familiar_with_points(engine)
        await engine.familiars.append_mutation("u1", _mutation(MutationCategory.color, "#ff0000"))
        choice = await engine.mutations.trigger("u1")
        mutation = await engine.mutations.choose(choice.session_id, "glow_fur")
        return choice, mutation

    choice, mutation = asyncio.run(scenario())

    assert [option.id for option in choice.options] == ["glow_fur", "ember_tail", "sky_blue"]
    assert mutation.stat_effects == {"vitals": {"energy": 9}}
    assert generator.contexts[0].recent_mutation_categories == [MutationCategory.color]
    assert generator.contexts[0].activity_category is None


def test_failing_generator_falls_back_to_menu(engine) -> None:
    engine.mutations.trait_generator = StubGenerator([], fail=True)

    async def scenario():
        await _familiar_with_points(engine)
        return await engine.mutations.trigger("u1")

    choice = asyncio.run(scenario())
    category = choice.options[0].category

    assert [option.id for option in choice.options] == [option.id for option in TRAIT_MENUS[category]]


def test_too_few_generated_options_fall_back_to_menu(engine) -> None:
    engine.mutations.trait_generator = StubGenerator([_descriptor("one", "color", "#000000"), _descriptor("two", "legs", 2)])

    async def scenario():
        await _familiar_with_points(engine)
        return await engine.mutations.trigger("u1")

    choice = asyncio.run(scenario())

    assert all(option.id not in {"one", "two"} for option in choice.options)


def test_uncontrolled_mutation_is_applied(engine) -> None:
    async def scenario():
        await engine.familiars.create("u1")
        mutation = await engine.mutations.generate_uncontrolled("u1")
        return mutation, await engine.familiars.get("u1")

    mutation, familiar = asyncio.run(scenario())

    assert mutation.type == MutationType.uncontrolled
    assert 0.05 <= mutation.traits[0].randomness_factor <= 0.15
    assert familiar.mutations == [mutation]
    assert familiar.evolution_points == 0


def test_uncontrolled_mutations_respect_limits(engine) -> None:
    async def scenario():
        await engine.familiars.create("u1")
        await engine.familiars.append_mutation("u1", _mutation(MutationCategory.legs, 4))
        for _ in range(8):
            try:
                await engine.mutations.generate_uncontrolled("u1")
            except NoCompatibleMutationError:
                pass
        return await engine.familiars.get("u1")

    counts = asyncio.run(scenario()).category_counts()

    assert counts["legs"] == 1
    for category, limit in config.MAX_INSTANCES_PER_CATEGORY.items():
        assert counts.get(category, 0) <= limit


def test_uncontrolled_mutation_gives_up_when_everything_is_full(engine) -> None:
    async def scenario():
        await engine.familiars.create("u1")
        for category, limit in config.MAX_INSTANCES_PER_CATEGORY.items():
            value = TRAIT_MENUS[MutationCategory(category)][0].value
            for _ in range(limit):
                await engine.familiars.append_mutation("u1", _mutation(MutationCategory(category), value))
        await engine.mutations.generate_uncontrolled("u1")

    with pytest.raises(NoCompatibleMutationError):
        asyncio.run(scenario())


def test_activity_bias_shapes_uncontrolled_category(engine) -> None:
    engine.mutations.settings = engine.mutations.settings.model_copy(update={"activity_bias_chance": 1.0})

    async def scenario():
        categories = set()
        for index in range(6):
            user_id = f"fan{index}"
            await engine.familiars.create(user_id)
            await engine.familiars.set_privacy_opt_in(user_id, True)
            await engine.activity.record_posts(user_id, ["science", "space", "askscience"])
            mutation = await engine.mutations.generate_uncontrolled(user_id)
            categories.add(mutation.traits[0].category.value)
        return categories

    assert asyncio.run(scenario()) <= set(config.ACTIVITY_MUTATION_BIAS["science"])
