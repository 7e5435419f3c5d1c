"""Lines: the five fixed station categories and the tag classifier.

A place can carry overlapping tags (a gas station with a deli counter, a
pharmacy selling groceries). Tiers are checked in priority order and the
first tier that matches any tag wins, independent of tag order:

    1. fuel                 -> Red
    2. pharmacy             -> Purple
    3. cafe / bakery        -> Orange
    4. convenience / grocery-> White
    5. anything else        -> Green
"""

import re
from collections.abc import Iterable
from enum import Enum


class Line(Enum):
    GREEN = ("Green", "#4CAF50", 5)
    ORANGE = ("Orange", "#FF9800", 3)
    RED = ("Red", "#F44336", 1)
    PURPLE = ("Purple", "#9C27B0", 2)
    WHITE = ("White", "#FFFFFF", 4)

    def __init__(self, display_name: str, color: str, priority: int):
        self.display_name = display_name
        self.color = color
        self.priority = priority


FUEL_TAGS = frozenset({"gas_station", "gas", "fuel", "petrol_station", "service_station"})
PHARMACY_TAGS = frozenset({"pharmacy", "drugstore", "chemist"})
CAFE_BAKERY_TAGS = frozenset({
    "cafe", "coffee", "coffee_shop", "bakery", "juice_bar", "juice", "tea_house", "dessert",
})
CONVENIENCE_TAGS = frozenset({
    "convenience_store", "grocery", "grocery_store", "supermarket", "market", "convenience",
})

# Recognised food tags. They need no tier of their own: Green is the fallback.
GREEN_TAGS = frozenset({
    "restaurant", "deli", "food_truck", "food", "meal_delivery", "meal_takeaway",
    "bar", "bistro", "fast_food", "food_court",
})

PRIORITY_TIERS: list[tuple[frozenset[str], Line]] = [
    (FUEL_TAGS, Line.RED),
    (PHARMACY_TAGS, Line.PURPLE),
    (CAFE_BAKERY_TAGS, Line.ORANGE),
    (CONVENIENCE_TAGS, Line.WHITE),
]
DEFAULT_LINE = Line.GREEN

_SEPARATORS = re.compile(r"[\s_\-]+")


def normalize_tag(tag: str) -> str:
    """'Gas Station' / 'gas-station' / ' GAS__station ' -> 'gas_station'."""
    return _SEPARATORS.sub("_", tag.strip().lower()).strip("_")


def classify(primary_tag: str, all_tags: Iterable[str] = ()) -> Line:
    """Return the single line for a place from its primary tag plus any other tags."""
    tags = {normalize_tag(primary_tag)}
    tags.update(normalize_tag(t) for t in all_tags)
    for tier_tags, line in PRIORITY_TIERS:
        if not tier_tags.isdisjoint(tags):
            return line
    return DEFAULT_LINE
