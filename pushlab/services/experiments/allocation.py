import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, TypeVar

T = TypeVar("T")


@dataclass
class WeightedVariant:
    name: str
    weight: int


def allocate(
    items: Sequence[T],
    variants: Sequence[WeightedVariant],
    rng: Optional[random.Random] = None,
) -> Dict[str, List[T]]:
    """
    Split items across variants in proportion to their weights.

    Items are shuffled first so allocation never follows upstream ordering
    (e.g. registration order). Each variant but the last takes
    ``weight * n // 100`` items in list order, an exact integer floor; the
    last variant takes whatever remains, so every item lands in exactly one
    variant.

    Args:
        items: Device handles (or any hashable ids) to allocate
        variants: Variants in experiment order, weights summing to 100
        rng: Random source; defaults to a system-seeded ``random.Random``

    Returns:
        Mapping of variant name to its disjoint share of ``items``
    """
    if not variants:
        raise ValueError("At least one variant is required")

    shuffled = list(items)
    (rng or random.Random()).shuffle(shuffled)
    total = len(shuffled)

    allocation: Dict[str, List[T]] = {}
    start = 0
    for variant in variants[:-1]:
        count = variant.weight * total // 100
        allocation[variant.name] = shuffled[start : start + count]
        start += count

    allocation[variants[-1].name] = shuffled[start:]
    return allocation
