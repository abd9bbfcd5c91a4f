from typing import Any, Dict, List

import pandas as pd

from pushlab.services.directory import DirectoryUser

PREFERENCE_KEYS = ("promotional", "order_status", "special_offers", "newsletter")


def _primary_city(attributes: Dict[str, Any]):
    addresses = [a for a in attributes.get("addresses") or [] if isinstance(a, dict)]
    if not addresses:
        return None
    primary = next((a for a in addresses if a.get("isDefault")), addresses[0])
    return primary.get("city")


def _members_frame(users: List[DirectoryUser]) -> pd.DataFrame:
    rows = []
    for user in users:
        attributes = user.attributes or {}
        analytics = attributes.get("analytics") or {}
        preferences = attributes.get("notificationPreferences")
        row = {
            "gender": attributes.get("gender"),
            "age": attributes.get("age"),
            "city": _primary_city(attributes),
            "orders_count": analytics.get("ordersCount"),
            "total_spent": analytics.get("totalSpent"),
            "has_preferences": isinstance(preferences, dict),
            "devices": len(user.device_handles),
        }
        for key in PREFERENCE_KEYS:
            row[f"pref_{key}"] = bool(preferences.get(key)) if isinstance(preferences, dict) else False
        rows.append(row)
    return pd.DataFrame(rows)


def summarize_members(users: List[DirectoryUser], top_cities: int = 5) -> Dict[str, Any]:
    """
    Summarise a segment's resolved members.

    Returns demographics (gender distribution, average age, top cities),
    purchase behaviour and notification opt-in percentages. An empty member
    list yields an empty dict.
    """
    if not users:
        return {}

    df = _members_frame(users)
    total = len(df)

    ages = pd.to_numeric(df["age"], errors="coerce").dropna()
    cities = df["city"].dropna().value_counts().head(top_cities)

    orders = pd.to_numeric(df["orders_count"], errors="coerce").fillna(0)
    spent = pd.to_numeric(df["total_spent"], errors="coerce").fillna(0)
    purchasers = orders[orders > 0]

    with_preferences = df[df["has_preferences"]]

    def opt_in(key: str) -> int:
        if with_preferences.empty:
            return 0
        return int(round(with_preferences[f"pref_{key}"].mean() * 100))

    return {
        "demographics": {
            "gender_distribution": {
                str(k): int(v) for k, v in df["gender"].dropna().value_counts().items()
            },
            "avg_age": int(round(ages.mean())) if not ages.empty else None,
            "top_cities": [
                {"city": city, "count": int(count), "percentage": int(round(count / total * 100))}
                for city, count in cities.items()
            ],
        },
        "behavior": {
            "avg_orders_per_user": round(float(purchasers.mean()), 1) if not purchasers.empty else 0.0,
            "avg_spent_per_user": round(float(spent.sum()) / total, 2),
            "total_revenue": round(float(spent.sum()), 2),
        },
        "notifications": {f"subscribed_to_{key}": opt_in(key) for key in PREFERENCE_KEYS},
        "devices": {
            "total_handles": int(df["devices"].sum()),
            "users_without_devices": int((df["devices"] == 0).sum()),
        },
    }
