"""
gitcity.database.seed — Catalog Seeder
========================================

Baseline rows the API needs to be usable on a fresh database: the ten
districts, the achievement catalog and the shop items.

Idempotent — only inserts rows whose primary key doesn't already exist.
Prices or thresholds edited later in the database are never overwritten.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from gitcity.constants import (
    DISTRICT_NAMES,
    FACES_ITEMS,
    ITEM_NAMES,
    STREAK_FREEZE_ITEM,
    zone_for_item,
)
from gitcity.database.models import Achievement, District, Item

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Achievements: (id, category, name, threshold, tier, reward_item_id)
# ---------------------------------------------------------------------------
DEFAULT_ACHIEVEMENTS: list[tuple[str, str, str, int, str, str | None]] = [
    ("first_push", "commits", "First Push", 1, "bronze", "flag"),
    ("committed", "commits", "Committed", 1_000, "silver", "custom_color"),
    ("grinder", "commits", "Grinder", 2_500, "gold", "neon_trim"),
    ("machine", "commits", "Machine", 10_000, "diamond", None),
    ("builder", "repos", "Builder", 25, "silver", "antenna_array"),
    ("architect", "repos", "Architect", 75, "gold", "rooftop_garden"),
    ("rising_star", "stars", "Rising Star", 100, "silver", "spotlight"),
    ("superstar", "stars", "Superstar", 1_000, "gold", None),
    ("recruiter", "social", "Recruiter", 10, "gold", "helipad"),
    ("appreciated", "kudos", "Appreciated", 10, "bronze", None),
    ("beloved", "kudos", "Beloved", 100, "gold", None),
    ("generous", "gifts_sent", "Generous", 1, "bronze", None),
    ("gifted", "gifts_received", "Gifted", 1, "bronze", None),
    ("regular", "streak", "Regular", 7, "bronze", None),
    ("dedicated", "streak", "Dedicated", 30, "gold", None),
    ("unstoppable", "streak", "Unstoppable", 100, "diamond", None),
    ("cheerleader", "kudos_streak", "Cheerleader", 7, "silver", None),
    ("raider", "raid", "Raider", 100, "bronze", None),
]


# ---------------------------------------------------------------------------
# Items: id → (usd cents, brl cents)
# ---------------------------------------------------------------------------
DEFAULT_ITEM_PRICES: dict[str, tuple[int, int]] = {
    "flag": (0, 0),
    "helipad": (199, 990),
    "spire": (149, 790),
    "satellite_dish": (149, 790),
    "crown_item": (499, 2490),
    "antenna_array": (149, 790),
    "rooftop_garden": (199, 990),
    "rooftop_fire": (299, 1490),
    "pool_party": (299, 1490),
    "neon_trim": (199, 990),
    "spotlight": (149, 790),
    "hologram_ring": (299, 1490),
    "lightning_aura": (399, 1990),
    "neon_outline": (299, 1490),
    "particle_aura": (399, 1990),
    "custom_color": (149, 790),
    "billboard": (299, 1490),
    "led_banner": (299, 1490),
    "streak_freeze": (99, 490),
}


def seed_catalog(engine: Engine) -> int:
    """Insert any missing districts, achievements and items.

    Returns the number of rows inserted.
    """
    inserted = 0
    with Session(engine) as session:
        for district_id, name in DISTRICT_NAMES.items():
            if session.get(District, district_id) is None:
                session.add(District(id=district_id, name=name, population=0))
                inserted += 1

        for order, (ach_id, category, name, threshold, tier, reward) in enumerate(
            DEFAULT_ACHIEVEMENTS
        ):
            if session.get(Achievement, ach_id) is None:
                session.add(Achievement(
                    id=ach_id,
                    category=category,
                    name=name,
                    description=f"Reach {threshold:,} in {category.replace('_', ' ')}",
                    threshold=threshold,
                    tier=tier,
                    reward_type="unlock_item" if reward else "exclusive_badge",
                    reward_item_id=reward,
                    sort_order=order,
                ))
                inserted += 1

        for item_id, (usd, brl) in DEFAULT_ITEM_PRICES.items():
            if session.get(Item, item_id) is None:
                session.add(Item(
                    id=item_id,
                    category="consumable" if item_id == STREAK_FREEZE_ITEM else "effect",
                    name=ITEM_NAMES.get(item_id, item_id),
                    price_usd_cents=usd,
                    price_brl_cents=brl,
                    is_active=True,
                    zone=zone_for_item(item_id) or ("faces" if item_id in FACES_ITEMS else None),
                    metadata_={},
                ))
                inserted += 1

        session.commit()

    if inserted:
        logger.info("Seeded %d catalog rows", inserted)
    return inserted
