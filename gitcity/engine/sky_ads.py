"""
gitcity.engine.sky_ads — Ad Rotation, Validation & Plans
==========================================================

Pure calculation for sky ads — no database I/O.

**Rotation.**  Every ``ROTATION_INTERVAL`` seconds a different subset of
paid ads is served.  The subset is picked by a seeded Fisher–Yates shuffle
driven by a linear congruential generator, with the seed derived from the
wall clock.  Every server instance therefore serves the same ads in the
same window without coordinating.  House ads (``priority >= 100``) only
fill slots that paid ads leave empty.

**Plans.**  Fixed price table per vehicle and duration, in USD and BRL
cents.
"""

from __future__ import annotations

import math
import re
import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from typing import TypeVar
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------
ROTATION_INTERVAL = 60  # seconds
HOUSE_PRIORITY = 100
PAID_AD_PRIORITY = 50

MAX_TEXT_LENGTH = 80
MAX_BRAND_LENGTH = 60
MAX_DESCRIPTION_LENGTH = 200

MAX_SLOTS: dict[str, int] = {
    "plane": 3,
    "blimp": 2,
    "billboard": 4,
    "rooftop_sign": 4,
    "led_wrap": 4,
}

VEHICLES: tuple[str, ...] = tuple(MAX_SLOTS)

ALLOWED_LINK_PATTERN = re.compile(r"^(https://|mailto:)")
HEX_COLOR_PATTERN = re.compile(r"^#[0-9a-fA-F]{6}$")


# ---------------------------------------------------------------------------
# Ad view — what the city client renders
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AdView:
    id: str
    text: str
    color: str
    bg_color: str
    vehicle: str
    priority: int
    brand: str | None = None
    description: str | None = None
    link: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tracked_link"] = build_ad_link(self)
        return data


DEFAULT_SKY_ADS: tuple[AdView, ...] = (
    AdView(
        id="gitcity",
        text="THEGITCITY.COM ★ YOUR CODE, YOUR CITY ★ THEGITCITY.COM",
        brand="Git City",
        description=(
            "A city built from GitHub contributions. Search your username and "
            "find your building among thousands of developers."
        ),
        color="#f8d880",
        bg_color="#1a1018",
        link="https://thegitcity.com",
        vehicle="plane",
        priority=100,
    ),
    AdView(
        id="samuel",
        text="HEY, I BUILD THIS! → SAMUELRIZZON.DEV",
        brand="Samuel Rizzon",
        description="Full-stack dev who builds weird and cool stuff. This city is one of them.",
        color="#c8e64a",
        bg_color="#1a1018",
        link="https://www.samuelrizzon.dev/en.html",
        vehicle="plane",
        priority=90,
    ),
    AdView(
        id="build",
        text="YOUR AI COPILOT TO GROW ON X",
        brand="ReplyOS",
        description=(
            "Viral library, lead radar, post writer, auto-replies. "
            "Your AI copilot to grow on X."
        ),
        color="#ffffff",
        bg_color="#2a1838",
        link="https://reply-os.com",
        vehicle="blimp",
        priority=80,
    ),
    AdView(
        id="advertise",
        text="ADD YOUR AD HERE",
        brand="Sky Ads",
        description="Want your brand flying over Git City? Planes, blimps, your colors. Get in touch!",
        color="#f8d880",
        bg_color="#1a1018",
        link="https://thegitcity.com/advertise",
        vehicle="plane",
        priority=10,
    ),
)


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------
def rotation_seed(now: float | None = None, interval: int = ROTATION_INTERVAL) -> int:
    """Seed shared by every instance for the current rotation window."""
    if now is None:
        now = time.time()
    return math.floor(now / interval)


def seeded_shuffle(items: Sequence[T], seed: int) -> list[T]:
    """Deterministic Fisher–Yates shuffle.  Same seed → same order.

    *items* is not mutated.
    """
    result = list(items)
    s = seed
    for i in range(len(result) - 1, 0, -1):
        s = (s * 1664525 + 1013904223) & 0x7FFFFFFF  # LCG
        j = s % (i + 1)
        result[i], result[j] = result[j], result[i]
    return result


def rotate_ads(
    ads: Sequence[AdView],
    max_slots: int,
    *,
    now: float | None = None,
    interval: int = ROTATION_INTERVAL,
) -> list[AdView]:
    """Pick which ads fill *max_slots* during the current rotation window.

    Paid ads always win.  When there are at least as many paid ads as
    slots, a seeded shuffle decides which of them fly this window and no
    house ad is shown.  Otherwise every paid ad is served and house ads
    back-fill the remaining slots in their given order.
    """
    house = [ad for ad in ads if ad.priority >= HOUSE_PRIORITY]
    paid = [ad for ad in ads if ad.priority < HOUSE_PRIORITY]

    if len(paid) >= max_slots:
        return seeded_shuffle(paid, rotation_seed(now, interval))[:max_slots]

    remaining = max_slots - len(paid)
    return paid + house[:remaining]


def rotate_by_vehicle(
    ads: Sequence[AdView],
    *,
    now: float | None = None,
    interval: int = ROTATION_INTERVAL,
) -> list[AdView]:
    """Rotate each vehicle group against its own slot cap, in vehicle order."""
    selected: list[AdView] = []
    for vehicle in VEHICLES:
        group = [ad for ad in ads if ad.vehicle == vehicle]
        selected.extend(rotate_ads(group, MAX_SLOTS[vehicle], now=now, interval=interval))
    return selected


# ---------------------------------------------------------------------------
# Validation & links
# ---------------------------------------------------------------------------
def is_allowed_link(link: str) -> bool:
    return bool(ALLOWED_LINK_PATTERN.match(link))


def is_hex_color(value: str | None) -> bool:
    return bool(value) and bool(HEX_COLOR_PATTERN.match(value))


def validate_ads(ads: Sequence[AdView]) -> list[AdView]:
    """Drop malformed ads and sort the rest by priority (highest first)."""
    valid = [
        ad for ad in ads
        if len(ad.text) <= MAX_TEXT_LENGTH
        and (not ad.link or is_allowed_link(ad.link))
        and is_hex_color(ad.color)
        and is_hex_color(ad.bg_color)
    ]
    return sorted(valid, key=lambda ad: ad.priority, reverse=True)


def build_ad_link(ad: AdView) -> str | None:
    """Append UTM params to an ad link.  ``mailto:`` links pass through."""
    if not ad.link:
        return None
    if ad.link.startswith("mailto:"):
        return ad.link

    parts = urlsplit(ad.link)
    if not parts.scheme or not parts.netloc:
        return ad.link

    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query.update({
        "utm_source": "gitcity",
        "utm_medium": "sky_ad",
        "utm_campaign": ad.id,
        "utm_content": ad.vehicle,
    })
    return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", urlencode(query), parts.fragment))


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------
# Promo discount multiplier.  1 disables the promo.
PROMO_DISCOUNT = 1


@dataclass(frozen=True, slots=True)
class SkyAdPlan:
    id: str
    label: str
    vehicle: str
    usd_cents: int
    brl_cents: int
    duration_days: int


def _plan(plan_id: str, label: str, usd: int, brl: int, days: int) -> SkyAdPlan:
    vehicle = plan_id.rsplit("_", 1)[0]
    return SkyAdPlan(plan_id, label, vehicle, usd, brl, days)


SKY_AD_PLANS: dict[str, SkyAdPlan] = {
    p.id: p
    for p in (
        _plan("plane_weekly", "Plane - Weekly", 1900, 9900, 7),
        _plan("plane_monthly", "Plane - Monthly", 5900, 29900, 30),
        _plan("blimp_weekly", "Blimp - Weekly", 7900, 39900, 7),
        _plan("blimp_monthly", "Blimp - Monthly", 27900, 139900, 30),
        _plan("billboard_weekly", "Billboard - Weekly", 3900, 19900, 7),
        _plan("billboard_monthly", "Billboard - Monthly", 13900, 69900, 30),
        _plan("rooftop_sign_weekly", "Rooftop Sign - Weekly", 5900, 29900, 7),
        _plan("rooftop_sign_monthly", "Rooftop Sign - Monthly", 19900, 99900, 30),
        _plan("led_wrap_weekly", "LED Wrap - Weekly", 2900, 14900, 7),
        _plan("led_wrap_monthly", "LED Wrap - Monthly", 9900, 49900, 30),
    )
}


def is_valid_plan_id(plan_id: str) -> bool:
    return plan_id in SKY_AD_PLANS


def get_full_price_cents(plan_id: str, currency: str) -> int:
    plan = SKY_AD_PLANS[plan_id]
    return plan.brl_cents if currency == "brl" else plan.usd_cents


def get_price_cents(plan_id: str, currency: str) -> int:
    return round(get_full_price_cents(plan_id, currency) * PROMO_DISCOUNT)


def format_price(cents: int, currency: str) -> str:
    """``1900, "usd"`` → ``"$19"``; ``1950, "brl"`` → ``"R$19.50"``."""
    value = cents / 100
    formatted = f"{value:.0f}" if value.is_integer() else f"{value:.2f}"
    return f"R${formatted}" if currency == "brl" else f"${formatted}"
