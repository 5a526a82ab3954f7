"""Contract for an optional external trait generator (typically an LLM).

The engine hands the generator a ``TraitContext`` and reads back option
descriptors. Only the id, category, label, value and stat effects matter to
the engine; everything else on a descriptor is left for the rendering client.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol, Sequence

from .models import Familiar, MutationCategory, TraitContext, TraitOption, TraitOptionDescriptor

logger = logging.getLogger(__name__)

RECENT_MUTATION_WINDOW = 3
MIN_OPTIONS = 3
MAX_OPTIONS = 5


class TraitGenerator(Protocol):
    async def generate_options(self, context: TraitContext) -> List[TraitOptionDescriptor]:
        ...


def build_trait_context(familiar: Familiar, activity_category: Optional[str] = None) -> TraitContext:
    recent = familiar.mutations[-RECENT_MUTATION_WINDOW:]
    categories = [trait.category for mutation in recent for trait in mutation.traits]
    return TraitContext(
        stats=familiar.stats,
        recent_mutation_categories=categories,
        biome=familiar.biome,
        activity_category=activity_category if familiar.privacy_opt_in else None,
    )


def options_from_descriptors(descriptors: Sequence[TraitOptionDescriptor]) -> List[TraitOption]:
    """Keep descriptors with a known category; ``[]`` when too few remain."""

    known = {category.value for category in MutationCategory}
    options: List[TraitOption] = []
    for descriptor in descriptors:
        if descriptor.category not in known:
            logger.warning("Dropping generated option %s with unknown category %s", descriptor.id, descriptor.category)
            continue
        options.append(
            TraitOption(
                id=descriptor.id,
                category=MutationCategory(descriptor.category),
                label=descriptor.label,
                value=descriptor.value,
                stat_effects=descriptor.stat_effects,
            )
        )
    if len(options) < MIN_OPTIONS:
        return []
    return options[:MAX_OPTIONS]
