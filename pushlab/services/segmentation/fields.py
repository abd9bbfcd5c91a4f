"""
Rule field catalog.

Maps a rule's ``(rule_type, field)`` pair to an attribute accessor on a
directory user's profile document. Known pairs resolve to a ``MappedField``
that carries the attribute path and its value kind; anything else resolves
to a ``RawField`` that reads the field name as a path unchanged, so new
profile attributes can be targeted before they are catalogued.
"""

import enum
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog

logger = structlog.get_logger()


class RuleType(str, enum.Enum):
    DEMOGRAPHIC = "demographic"
    BEHAVIOR = "behavior"
    PREFERENCE = "preference"
    PURCHASE = "purchase"
    ENGAGEMENT = "engagement"
    LOCATION = "location"
    DATE = "date"
    DEVICE = "device"


class FieldKind(str, enum.Enum):
    NUMBER = "number"
    STRING = "string"
    ENUM = "enum"
    BOOLEAN = "boolean"
    DATE = "date"


_MISSING = object()


def _walk(node: Any, parts: List[str], out: List[Any]) -> None:
    if isinstance(node, list):
        for item in node:
            _walk(item, parts, out)
        return
    if not parts:
        out.append(node)
        return
    if not isinstance(node, dict):
        return
    child = node.get(parts[0], _MISSING)
    if child is _MISSING:
        return
    _walk(child, parts[1:], out)


def resolve_path(record: Dict[str, Any], path: str) -> List[Any]:
    """
    Collect every value stored at a dotted path.

    Lists are fanned out at every level, so ``addresses.city`` yields the
    city of each address and a list-valued leaf yields its elements. An
    empty result means the attribute is absent; ``None`` entries mean it is
    present but null.
    """
    out: List[Any] = []
    _walk(record, path.split("."), out)
    return out


@dataclass(frozen=True)
class MappedField:
    rule_type: RuleType
    field: str
    path: str
    kind: FieldKind
    label: str
    values: Optional[Tuple[str, ...]] = None
    min: Optional[float] = None
    max: Optional[float] = None

    def resolve(self, record: Dict[str, Any]) -> List[Any]:
        return resolve_path(record, self.path)


@dataclass(frozen=True)
class RawField:
    """Uncatalogued field read from the profile by its own name."""

    name: str
    kind: Optional[FieldKind] = None

    @property
    def path(self) -> str:
        return self.name

    def resolve(self, record: Dict[str, Any]) -> List[Any]:
        return resolve_path(record, self.name)


FieldAccessor = Union[MappedField, RawField]


RULE_TYPE_LABELS: Dict[RuleType, str] = {
    RuleType.DEMOGRAPHIC: "Demographics",
    RuleType.BEHAVIOR: "Behavior",
    RuleType.PREFERENCE: "Preferences",
    RuleType.PURCHASE: "Purchases",
    RuleType.ENGAGEMENT: "Engagement",
    RuleType.LOCATION: "Location",
    RuleType.DATE: "Dates",
    RuleType.DEVICE: "Device",
}


def _f(rule_type, field, path, kind, label, **extra) -> MappedField:
    return MappedField(rule_type=rule_type, field=field, path=path, kind=kind, label=label, **extra)


_N, _S, _E, _B, _D = (
    FieldKind.NUMBER,
    FieldKind.STRING,
    FieldKind.ENUM,
    FieldKind.BOOLEAN,
    FieldKind.DATE,
)

_CATALOG: List[MappedField] = [
    # Demographics
    _f(RuleType.DEMOGRAPHIC, "age", "age", _N, "Age"),
    _f(RuleType.DEMOGRAPHIC, "gender", "gender", _E, "Gender", values=("male", "female", "other")),
    _f(RuleType.DEMOGRAPHIC, "language", "language", _S, "Language"),
    _f(RuleType.DEMOGRAPHIC, "country", "addresses.country", _S, "Country"),
    _f(RuleType.DEMOGRAPHIC, "city", "addresses.city", _S, "City"),
    _f(RuleType.DEMOGRAPHIC, "registrationDate", "createdAt", _D, "Registration date"),
    # Behavior
    _f(RuleType.BEHAVIOR, "lastLogin", "lastLoginAt", _D, "Last login"),
    _f(RuleType.BEHAVIOR, "visits", "analytics.visits", _N, "Visits"),
    _f(RuleType.BEHAVIOR, "ordersCount", "analytics.ordersCount", _N, "Orders"),
    _f(RuleType.BEHAVIOR, "avgOrderValue", "analytics.avgOrderValue", _N, "Average order value"),
    _f(RuleType.BEHAVIOR, "lastActive", "lastActiveAt", _D, "Last activity"),
    _f(RuleType.BEHAVIOR, "loginCount", "analytics.loginCount", _N, "Logins"),
    _f(RuleType.BEHAVIOR, "daysInactive", "daysInactive", _N, "Days inactive"),
    # Preferences
    _f(
        RuleType.PREFERENCE,
        "coffeeIntensity",
        "notificationPreferences.intensity",
        _N,
        "Coffee intensity",
        min=1,
        max=5,
    ),
    _f(
        RuleType.PREFERENCE,
        "coffeeSweetness",
        "notificationPreferences.sweetness",
        _N,
        "Preferred sweetness",
        min=1,
        max=5,
    ),
    _f(
        RuleType.PREFERENCE,
        "milkRatio",
        "notificationPreferences.milkRatio",
        _N,
        "Milk ratio",
        min=1,
        max=5,
    ),
    _f(RuleType.PREFERENCE, "promotional", "notificationPreferences.promotional", _B, "Accepts promotions"),
    _f(RuleType.PREFERENCE, "orderStatus", "notificationPreferences.order_status", _B, "Order notifications"),
    _f(RuleType.PREFERENCE, "specialOffers", "notificationPreferences.special_offers", _B, "Special offers"),
    _f(RuleType.PREFERENCE, "newsletter", "notificationPreferences.newsletter", _B, "Newsletter"),
    _f(RuleType.PREFERENCE, "favoriteDrink", "favoriteDrinks.name", _S, "Favorite drink"),
    # Purchases
    _f(RuleType.PURCHASE, "totalSpent", "analytics.totalSpent", _N, "Total spent"),
    _f(RuleType.PURCHASE, "lastPurchaseDate", "analytics.lastPurchaseDate", _D, "Last purchase"),
    _f(RuleType.PURCHASE, "favoriteProduct", "analytics.favoriteProduct", _S, "Favorite product"),
    _f(RuleType.PURCHASE, "purchaseFrequency", "analytics.purchaseFrequency", _N, "Purchase frequency"),
    _f(RuleType.PURCHASE, "orderValue", "analytics.avgOrderValue", _N, "Average order value"),
    _f(RuleType.PURCHASE, "ordersCount", "analytics.ordersCount", _N, "Orders"),
    _f(RuleType.PURCHASE, "daysFromLastOrder", "analytics.daysSinceLastOrder", _N, "Days since last order"),
    # Engagement
    _f(RuleType.ENGAGEMENT, "appOpenCount", "analytics.appOpenCount", _N, "App opens"),
    _f(
        RuleType.ENGAGEMENT,
        "notificationClickRate",
        "analytics.notificationOpenRate",
        _N,
        "Notification click rate",
    ),
    _f(RuleType.ENGAGEMENT, "productViewCount", "analytics.productViews", _N, "Product views"),
    _f(RuleType.ENGAGEMENT, "cartAbandonment", "analytics.cartAbandonmentRate", _N, "Cart abandonment rate"),
    _f(RuleType.ENGAGEMENT, "reviewCount", "analytics.reviewCount", _N, "Reviews"),
    _f(RuleType.ENGAGEMENT, "reviewScore", "analytics.avgReviewScore", _N, "Average review score"),
    # Location
    _f(RuleType.LOCATION, "city", "addresses.city", _S, "City"),
    _f(RuleType.LOCATION, "zipCode", "addresses.zipCode", _S, "Zip code"),
    _f(RuleType.LOCATION, "country", "addresses.country", _S, "Country"),
    _f(RuleType.LOCATION, "state", "addresses.state", _S, "State"),
    _f(RuleType.LOCATION, "storeVisits", "analytics.storeVisits", _N, "Store visits"),
    _f(RuleType.LOCATION, "nearestStore", "analytics.preferredStore", _S, "Preferred store"),
    # Device
    _f(RuleType.DEVICE, "platform", "devices.platform", _E, "Platform", values=("ios", "android", "web")),
    _f(RuleType.DEVICE, "deviceModel", "devices.model", _S, "Device model"),
    _f(RuleType.DEVICE, "osVersion", "devices.osVersion", _S, "OS version"),
    _f(RuleType.DEVICE, "appVersion", "devices.appVersion", _S, "App version"),
    _f(RuleType.DEVICE, "pushEnabled", "devices.pushEnabled", _B, "Push enabled"),
]

FIELD_CATALOG: Dict[Tuple[RuleType, str], MappedField] = {
    (entry.rule_type, entry.field): entry for entry in _CATALOG
}


def resolve_field(rule_type: Union[RuleType, str], field: str) -> FieldAccessor:
    mapped = FIELD_CATALOG.get((RuleType(rule_type), field))
    if mapped is not None:
        return mapped

    logger.info("raw_field_fallback", rule_type=RuleType(rule_type).value, field=field)
    return RawField(field)


def fields_for(rule_type: RuleType) -> List[MappedField]:
    return [entry for entry in _CATALOG if entry.rule_type == rule_type]
