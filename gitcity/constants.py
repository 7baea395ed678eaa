"""
gitcity.constants — Shared Constants & Helpers
================================================

Single source of truth for districts, building zones, item names and
achievement tier presentation.  Import from here instead of duplicating
in routes, services and email senders.
"""

from __future__ import annotations

from datetime import UTC, date, datetime

# ---------------------------------------------------------------------------
# Districts
# ---------------------------------------------------------------------------
VALID_DISTRICTS: tuple[str, ...] = (
    "frontend",
    "backend",
    "fullstack",
    "mobile",
    "data_ai",
    "devops",
    "security",
    "gamedev",
    "vibe_coder",
    "creator",
)

DISTRICT_NAMES: dict[str, str] = {
    "frontend": "Frontend",
    "backend": "Backend",
    "fullstack": "Full Stack",
    "mobile": "Mobile",
    "data_ai": "Data & AI",
    "devops": "DevOps",
    "security": "Security",
    "gamedev": "GameDev",
    "vibe_coder": "Vibe Coder",
    "creator": "Creator",
}

DISTRICT_CHANGE_COOLDOWN_DAYS = 90
MAX_FREE_DISTRICT_CHANGES = 2


# ---------------------------------------------------------------------------
# Building zones & items
# ---------------------------------------------------------------------------
ZONE_ITEMS: dict[str, tuple[str, ...]] = {
    "crown": ("flag", "helipad", "spire", "satellite_dish", "crown_item"),
    "roof": ("antenna_array", "rooftop_garden", "rooftop_fire", "pool_party"),
    "aura": (
        "neon_trim",
        "spotlight",
        "hologram_ring",
        "lightning_aura",
        "neon_outline",
        "particle_aura",
    ),
}

ITEM_NAMES: dict[str, str] = {
    "flag": "Flag",
    "helipad": "Helipad",
    "spire": "Water Tower",
    "satellite_dish": "Satellite Dish",
    "crown_item": "Crown",
    "antenna_array": "Solar Panels",
    "rooftop_garden": "Rooftop Garden",
    "rooftop_fire": "Rooftop Fire",
    "pool_party": "Pool Party",
    "neon_trim": "Neon Trim",
    "spotlight": "Spotlight",
    "hologram_ring": "Hologram Ring",
    "lightning_aura": "Lightning Aura",
    "custom_color": "Custom Color",
    "billboard": "Billboard",
    "led_banner": "LED Banner",
    "neon_outline": "Neon Outline",
    "particle_aura": "Particle Aura",
    "streak_freeze": "Streak Freeze",
}

# Building faces; not part of the crown/roof/aura loadout.
FACES_ITEMS: tuple[str, ...] = ("custom_color", "billboard", "led_banner")

# Item granted for free when a developer first claims their building.
FREE_CLAIM_ITEM = "flag"

# Consumable: buying it grants a streak freeze instead of a cosmetic.
STREAK_FREEZE_ITEM = "streak_freeze"


def item_name(item_id: str) -> str:
    return ITEM_NAMES.get(item_id, item_id)


def zone_for_item(item_id: str) -> str | None:
    """Return the loadout zone an item lives in, or None (faces / consumables)."""
    for zone, ids in ZONE_ITEMS.items():
        if item_id in ids:
            return zone
    return None


# ---------------------------------------------------------------------------
# Achievement tiers
# ---------------------------------------------------------------------------
TIER_COLORS: dict[str, str] = {
    "bronze": "#cd7f32",
    "silver": "#c0c0c0",
    "gold": "#ffd700",
    "diamond": "#b9f2ff",
}

TIER_EMOJI: dict[str, str] = {
    "bronze": "\U0001f7e4",   # 🟤
    "silver": "\u26aa",      # ⚪
    "gold": "\U0001f7e1",     # 🟡
    "diamond": "\U0001f48e",  # 💎
}

# Tiers worth an email; bronze/silver unlock too often.
NOTIFY_TIERS = frozenset({"gold", "diamond"})


# ---------------------------------------------------------------------------
# Community milestones (total developers in the city)
# ---------------------------------------------------------------------------
MILESTONES: tuple[int, ...] = (
    10_000, 15_000, 20_000, 25_000, 30_000, 40_000, 50_000, 75_000, 100_000,
)


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------
def utcnow() -> datetime:
    return datetime.now(UTC)


def utctoday() -> date:
    return datetime.now(UTC).date()


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
