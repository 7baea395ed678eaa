"""
gitcity.services.sky_ad_service — Sky Ad Persistence, Tracking & Expiry
=========================================================================

Everything about sky ads that touches the database:

* serving the rotated ad list to the city client,
* the self-serve flow (checkout → Stripe → setup page by tracking token),
* impression / click tracking with bot filtering and click dedup,
* admin management (CRUD + batch pause/resume/delete),
* the expiry cron that emails advertisers before and after their run.

Rotation and validation rules themselves live in
:mod:`gitcity.engine.sky_ads`.
"""

from __future__ import annotations

import hashlib
import logging
import math
import os
import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import urlsplit

from sqlalchemy import Engine, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gitcity.constants import as_utc, utcnow
from gitcity.database.engine import get_session, run_db
from gitcity.database.models import AdEventType, AdVehicle, SkyAd, SkyAdEvent
from gitcity.engine.moderation import contains_blocked_content, is_suspicious_link
from gitcity.engine.sky_ads import (
    DEFAULT_SKY_ADS,
    MAX_BRAND_LENGTH,
    MAX_DESCRIPTION_LENGTH,
    MAX_TEXT_LENGTH,
    PAID_AD_PRIORITY,
    ROTATION_INTERVAL,
    SKY_AD_PLANS,
    VEHICLES,
    AdView,
    is_allowed_link,
    is_hex_color,
    is_valid_plan_id,
    rotate_by_vehicle,
)
from gitcity.services.email_template import (
    SITE_URL,
    build_button,
    build_stats_table,
    escape_html,
    wrap_in_base_template,
)
from gitcity.services.errors import ServiceError
from gitcity.services.resend_client import Mailer

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = string.ascii_lowercase + string.digits
TRACKING_TOKEN_LENGTH = 24
MIN_TOKEN_LENGTH = 10

BOT_UA_PATTERN = re.compile(
    r"bot|crawler|spider|headless|phantomjs|selenium|puppeteer|wget|curl|"
    r"python-requests|scrapy|slurp|mediapartners",
    re.IGNORECASE,
)
CLICK_TYPES = frozenset({AdEventType.CLICK, AdEventType.CTA_CLICK})
CLICK_DEDUP_WINDOW = timedelta(hours=1)
MAX_USER_AGENT_LENGTH = 256
MAX_LOGIN_LENGTH = 39

EXPIRY_WARNING_WINDOW = timedelta(hours=48)

# Admin PUT may only touch these columns.
UPDATABLE_FIELDS = frozenset({
    "active", "brand", "text", "description", "color", "bg_color",
    "link", "vehicle", "priority", "starts_at", "ends_at",
})
BATCH_ACTIONS = ("pause", "resume", "delete")


# ---------------------------------------------------------------------------
# Serving
# ---------------------------------------------------------------------------
def _to_view(ad: SkyAd) -> AdView:
    return AdView(
        id=ad.id,
        text=ad.text,
        color=ad.color,
        bg_color=ad.bg_color,
        vehicle=ad.vehicle,
        priority=ad.priority,
        brand=ad.brand or None,
        description=ad.description,
        link=ad.link,
    )


def list_active_ads(
    session: Session,
    *,
    now: datetime | None = None,
    interval: int = ROTATION_INTERVAL,
) -> list[dict]:
    """Ads the city should render right now, rotated per vehicle.

    Falls back to the house defaults, unrotated and in their fixed order,
    when nothing is live or the query fails.
    """
    now = now or utcnow()
    try:
        rows = session.scalars(
            select(SkyAd)
            .where(
                SkyAd.active.is_(True),
                SkyAd.starts_at.is_(None) | (SkyAd.starts_at <= now),
                SkyAd.ends_at.is_(None) | (SkyAd.ends_at > now),
            )
            .order_by(SkyAd.priority.desc())
        ).all()
    except SQLAlchemyError:
        logger.exception("Sky ad query failed, serving defaults")
        rows = []

    if not rows:
        return [ad.to_dict() for ad in DEFAULT_SKY_ADS]
    views = [_to_view(row) for row in rows]
    rotated = rotate_by_vehicle(views, now=now.timestamp(), interval=interval)
    return [ad.to_dict() for ad in rotated]


# ---------------------------------------------------------------------------
# Self-serve checkout
# ---------------------------------------------------------------------------
def generate_token(length: int = TRACKING_TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def resolve_currency(country: str | None, requested: str | None) -> str:
    """Brazilian visitors are always charged in BRL."""
    if (country or "").upper() == "BR":
        return "brl"
    return "brl" if requested == "brl" else "usd"


def validate_checkout(plan_id: str | None, text: str | None, color: str | None, bg_color: str | None) -> str:
    """Check a checkout request and return the trimmed ad text."""
    if not plan_id or not is_valid_plan_id(plan_id):
        raise ServiceError(400, "Invalid plan")
    if not text or not text.strip():
        raise ServiceError(400, "Text is required")
    if len(text) > MAX_TEXT_LENGTH:
        raise ServiceError(400, f"Text must be {MAX_TEXT_LENGTH} characters or less")
    reason = contains_blocked_content(text)
    if reason:
        raise ServiceError(400, reason)
    if not is_hex_color(color):
        raise ServiceError(400, "Invalid text color (use #RRGGBB)")
    if not is_hex_color(bg_color):
        raise ServiceError(400, "Invalid background color (use #RRGGBB)")
    return text.strip()


@dataclass(frozen=True, slots=True)
class PendingAd:
    ad_id: str
    tracking_token: str
    plan_id: str


def create_pending_ad(engine: Engine, *, plan_id: str, text: str, color: str, bg_color: str) -> PendingAd:
    """Insert the inactive ad row that the Stripe webhook will later activate."""
    plan = SKY_AD_PLANS[plan_id]
    ad_id = "ad-" + generate_token()[:16]
    token = generate_token()
    with get_session(engine) as session:
        session.add(SkyAd(
            id=ad_id,
            brand="",
            text=text,
            color=color,
            bg_color=bg_color,
            vehicle=plan.vehicle,
            priority=PAID_AD_PRIORITY,
            active=False,
            plan_id=plan_id,
            tracking_token=token,
        ))
    logger.info("Created pending sky ad %s (%s)", ad_id, plan_id)
    return PendingAd(ad_id, token, plan_id)


def attach_checkout_session(engine: Engine, ad_id: str, stripe_session_id: str) -> None:
    with get_session(engine) as session:
        session.execute(
            update(SkyAd).where(SkyAd.id == ad_id).values(stripe_session_id=stripe_session_id)
        )


def delete_ad(engine: Engine, ad_id: str) -> None:
    with get_session(engine) as session:
        _delete_ads(session, [ad_id])


def activate_from_checkout(session: Session, ad_id: str, purchaser_email: str | None) -> SkyAd | None:
    """Start the paid run of *ad_id*: ``now`` until ``now + plan days``."""
    ad = session.get(SkyAd, ad_id)
    if ad is None:
        logger.warning("Stripe reported payment for unknown sky ad %s", ad_id)
        return None
    plan = SKY_AD_PLANS.get(ad.plan_id or "")
    now = utcnow()
    ad.active = True
    ad.starts_at = now
    ad.ends_at = now + timedelta(days=plan.duration_days) if plan else None
    ad.purchaser_email = purchaser_email
    logger.info("Activated sky ad %s until %s", ad.id, ad.ends_at)
    return ad


# ---------------------------------------------------------------------------
# Setup page (by tracking token)
# ---------------------------------------------------------------------------
def _find_by_token(session: Session, token: str) -> SkyAd:
    if not token or len(token) < MIN_TOKEN_LENGTH:
        raise ServiceError(400, "Invalid token")
    ad = session.scalar(select(SkyAd).where(SkyAd.tracking_token == token))
    if ad is None:
        raise ServiceError(404, "Ad not found")
    return ad


def _event_totals(session: Session, ad_ids: list[str]) -> dict[str, dict[str, int]]:
    totals = {ad_id: {"impressions": 0, "clicks": 0, "cta_clicks": 0} for ad_id in ad_ids}
    if not ad_ids:
        return totals
    rows = session.execute(
        select(SkyAdEvent.ad_id, SkyAdEvent.event_type, func.count())
        .where(SkyAdEvent.ad_id.in_(ad_ids))
        .group_by(SkyAdEvent.ad_id, SkyAdEvent.event_type)
    ).all()
    for ad_id, event_type, count in rows:
        if event_type == AdEventType.IMPRESSION:
            totals[ad_id]["impressions"] += count
        elif event_type in CLICK_TYPES:
            totals[ad_id]["clicks"] += count
            if event_type == AdEventType.CTA_CLICK:
                totals[ad_id]["cta_clicks"] += count
    return totals


def ad_to_dict(ad: SkyAd) -> dict:
    return {
        "id": ad.id,
        "brand": ad.brand or None,
        "text": ad.text,
        "description": ad.description,
        "color": ad.color,
        "bg_color": ad.bg_color,
        "link": ad.link,
        "vehicle": ad.vehicle,
        "priority": ad.priority,
        "active": ad.active,
        "plan_id": ad.plan_id,
        "starts_at": ad.starts_at.isoformat() if ad.starts_at else None,
        "ends_at": ad.ends_at.isoformat() if ad.ends_at else None,
    }


def get_setup(session: Session, token: str) -> dict:
    ad = _find_by_token(session, token)
    return {**ad_to_dict(ad), "stats": _event_totals(session, [ad.id])[ad.id]}


def _moderated(value: object, max_length: int) -> str:
    cleaned = str(value)[:max_length].strip()
    reason = contains_blocked_content(cleaned) if cleaned else None
    if reason:
        raise ServiceError(400, reason)
    return cleaned


def update_setup(session: Session, token: str, fields: dict) -> dict:
    """Apply the advertiser's post-payment edits.  Absent keys are untouched."""
    ad = _find_by_token(session, token)
    changes: dict[str, str | None] = {}

    if fields.get("text") is not None:
        text = _moderated(fields["text"], MAX_TEXT_LENGTH)
        if not text:
            raise ServiceError(400, "Ad text cannot be empty")
        changes["text"] = text

    if fields.get("brand") is not None:
        changes["brand"] = _moderated(fields["brand"], MAX_BRAND_LENGTH)

    if fields.get("description") is not None:
        changes["description"] = _moderated(fields["description"], MAX_DESCRIPTION_LENGTH) or None

    if fields.get("link") is not None:
        link = str(fields["link"]).strip()
        if link and not is_allowed_link(link):
            raise ServiceError(400, "Link must start with https:// or mailto:")
        if link and is_suspicious_link(link):
            raise ServiceError(400, "This link is not allowed")
        changes["link"] = link or None

    for key, value in changes.items():
        setattr(ad, key, value)
    if changes:
        logger.info("Sky ad %s setup updated: %s", ad.id, ", ".join(sorted(changes)))
    return {"ok": True}


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------
def is_allowed_origin(origin: str | None, allowed: tuple[str, ...]) -> bool:
    """No origin header is allowed.  A malformed one is not."""
    if not origin:
        return True
    parts = urlsplit(origin)
    if not parts.scheme or not parts.netloc:
        return False
    return f"{parts.scheme}://{parts.netloc}" in allowed


def is_bot(user_agent: str | None) -> bool:
    return bool(user_agent) and BOT_UA_PATTERN.search(user_agent) is not None


def hash_ip(ip: str) -> str:
    secret = os.getenv("IP_HASH_SECRET", "")
    return hashlib.sha256((ip + secret).encode("utf-8")).hexdigest()


def parse_event_types(event_type: object, event_types: object) -> list[str]:
    valid = set(AdEventType)
    types: list[str] = []
    if isinstance(event_type, str) and event_type in valid:
        types.append(event_type)
    if isinstance(event_types, list):
        for t in event_types:
            if isinstance(t, str) and t in valid and t not in types:
                types.append(t)
    return types


def track_events(
    session: Session,
    *,
    ad_id: str,
    event_types: list[str],
    ip: str,
    user_agent: str | None = None,
    github_login: str | None = None,
    country: str | None = None,
    now: datetime | None = None,
) -> int:
    """Store impression / click events and return how many were written.

    Clicks repeated from the same IP hash within an hour are dropped.
    Events for ads without a row (the built-in house ads) are not stored.
    """
    if session.get(SkyAd, ad_id) is None:
        logger.debug("Ignoring %s for unknown sky ad %s", event_types, ad_id)
        return 0
    now = now or utcnow()
    ip_hash = hash_ip(ip)

    clicks = [t for t in event_types if t in CLICK_TYPES]
    others = [t for t in event_types if t not in CLICK_TYPES]
    if clicks:
        recent = session.scalar(
            select(func.count()).select_from(SkyAdEvent).where(
                SkyAdEvent.ad_id == ad_id,
                SkyAdEvent.ip_hash == ip_hash,
                SkyAdEvent.event_type.in_(clicks),
                SkyAdEvent.created_at >= now - CLICK_DEDUP_WINDOW,
            )
        ) or 0
        if recent:
            clicks = []

    final = others + clicks
    login = github_login[:MAX_LOGIN_LENGTH].lower() if isinstance(github_login, str) else None
    for event_type in final:
        session.add(SkyAdEvent(
            ad_id=ad_id,
            event_type=event_type,
            ip_hash=ip_hash,
            user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
            github_login=login,
            country=country,
            created_at=now,
        ))
    return len(final)


# ---------------------------------------------------------------------------
# Admin management
# ---------------------------------------------------------------------------
def list_all_ads(session: Session) -> list[dict]:
    ads = session.scalars(select(SkyAd).order_by(SkyAd.priority.desc(), SkyAd.created_at.desc())).all()
    totals = _event_totals(session, [ad.id for ad in ads])
    return [{**ad_to_dict(ad), "stats": totals[ad.id]} for ad in ads]


def create_ad(session: Session, data: dict) -> dict:
    if not data.get("id") or not data.get("brand") or not data.get("text"):
        raise ServiceError(400, "Missing required fields: id, brand, text")
    if session.get(SkyAd, data["id"]) is not None:
        raise ServiceError(400, f"Ad {data['id']!r} already exists")

    vehicle = data.get("vehicle")
    ad = SkyAd(
        id=data["id"],
        brand=data["brand"],
        text=data["text"],
        description=data.get("description"),
        color=data.get("color") or "#f8d880",
        bg_color=data.get("bg_color") or "#1a1018",
        link=data.get("link"),
        vehicle=vehicle if vehicle in VEHICLES else AdVehicle.PLANE,
        priority=data["priority"] if data.get("priority") is not None else PAID_AD_PRIORITY,
        active=True,
        starts_at=data.get("starts_at"),
        ends_at=data.get("ends_at"),
    )
    session.add(ad)
    session.flush()
    logger.info("Admin created sky ad %s", ad.id)
    return ad_to_dict(ad)


def update_ad(session: Session, ad_id: str | None, data: dict) -> dict:
    if not ad_id:
        raise ServiceError(400, "Missing ad id")
    changes = {k: v for k, v in data.items() if k in UPDATABLE_FIELDS}
    if not changes:
        raise ServiceError(400, "No valid fields to update")
    if "vehicle" in changes and changes["vehicle"] not in VEHICLES:
        raise ServiceError(400, "Invalid vehicle")

    ad = session.get(SkyAd, ad_id)
    if ad is None:
        raise ServiceError(404, "Ad not found")
    for key, value in changes.items():
        setattr(ad, key, value)
    session.flush()
    return ad_to_dict(ad)


def _delete_ads(session: Session, ad_ids: list[str]) -> int:
    session.execute(delete(SkyAdEvent).where(SkyAdEvent.ad_id.in_(ad_ids)))
    return session.execute(delete(SkyAd).where(SkyAd.id.in_(ad_ids))).rowcount or 0


def remove_ad(session: Session, ad_id: str | None) -> dict:
    if not ad_id:
        raise ServiceError(400, "Missing ad id")
    _delete_ads(session, [ad_id])
    logger.info("Admin deleted sky ad %s", ad_id)
    return {"ok": True}


def batch_action(session: Session, ids: object, action: object) -> dict:
    if not isinstance(ids, list) or not ids:
        raise ServiceError(400, "Missing ids array")
    if action not in BATCH_ACTIONS:
        raise ServiceError(400, "Invalid action. Use: pause, resume, delete")

    if action == "delete":
        affected = _delete_ads(session, ids)
    else:
        affected = session.execute(
            update(SkyAd).where(SkyAd.id.in_(ids)).values(active=action == "resume")
        ).rowcount or 0
    logger.info("Admin %s %d sky ad(s)", action, affected)
    return {"ok": True, "affected": affected}


# ---------------------------------------------------------------------------
# Expiry emails
# ---------------------------------------------------------------------------
def _days(n: int) -> str:
    return f"{n} day" if n == 1 else f"{n} days"


def build_expiring_email(brand: str, days_left: int, tracking_url: str) -> tuple[str, str]:
    subject = f"Your Git City ad expires in {_days(days_left)}"
    body = f"""
<h2 style="color: #c8e64a; margin-top: 0;">Heads up!</h2>
<p>Your ad <strong>"{escape_html(brand)}"</strong> expires in <strong>{_days(days_left)}</strong>.</p>
<p>Check your stats before it ends:</p>
{build_button("View Dashboard", tracking_url)}
<p>Want to keep running? <a href="{SITE_URL}/advertise" style="color: #c8e64a;">Renew your ad</a></p>
"""
    return subject, wrap_in_base_template(body)


def build_expired_email(brand: str, impressions: int, clicks: int, advertise_url: str) -> tuple[str, str]:
    subject = f'Your Git City ad "{brand}" has ended'
    body = f"""
<h2 style="color: #c8e64a; margin-top: 0;">Campaign complete</h2>
<p>Your ad <strong>"{escape_html(brand)}"</strong> has ended. Here are the results:</p>
{build_stats_table([("impressions", f"{impressions:,}"), ("clicks", f"{clicks:,}")])}
<p>Ready for another run?</p>
{build_button("Buy a new ad", advertise_url)}
"""
    return subject, wrap_in_base_template(body)


@dataclass(frozen=True, slots=True)
class ExpiryCandidate:
    ad_id: str
    brand: str
    email: str
    tracking_token: str | None
    ends_at: datetime


def _expiry_candidates(engine: Engine, now: datetime) -> tuple[list[ExpiryCandidate], list[ExpiryCandidate]]:
    with get_session(engine) as session:
        base = select(SkyAd).where(
            SkyAd.active.is_(True),
            SkyAd.ends_at.is_not(None),
            SkyAd.purchaser_email.is_not(None),
        )
        expiring = session.scalars(base.where(
            SkyAd.ends_at > now,
            SkyAd.ends_at <= now + EXPIRY_WARNING_WINDOW,
            SkyAd.expiry_notified.is_(None),
        )).all()
        expired = session.scalars(base.where(
            SkyAd.ends_at < now,
            SkyAd.expiry_notified.is_(None) | (SkyAd.expiry_notified != "expired"),
        )).all()

        def pack(ads: list[SkyAd]) -> list[ExpiryCandidate]:
            return [
                ExpiryCandidate(ad.id, ad.brand or "Your Ad", ad.purchaser_email,
                                ad.tracking_token, as_utc(ad.ends_at))
                for ad in ads
            ]

        return pack(expiring), pack(expired)


def _mark_notified(engine: Engine, ad_id: str, state: str) -> None:
    with get_session(engine) as session:
        session.execute(update(SkyAd).where(SkyAd.id == ad_id).values(expiry_notified=state))


def _final_stats(engine: Engine, ad_id: str) -> dict[str, int]:
    with get_session(engine) as session:
        return _event_totals(session, [ad_id])[ad_id]


async def run_ad_expiry(
    engine: Engine,
    mailer: Mailer,
    *,
    base_url: str = SITE_URL,
    now: datetime | None = None,
) -> dict:
    """Email advertisers whose run ends within 48h, and those whose run ended.

    Each ad is emailed at most once per stage.  A failed send leaves the ad
    unmarked so the next run retries it.
    """
    now = now or utcnow()
    results = {"expiring": 0, "expired": 0, "errors": 0}
    expiring, expired = await run_db(_expiry_candidates, engine, now)

    for ad in expiring:
        try:
            days_left = max(1, math.ceil((ad.ends_at - now).total_seconds() / 86400))
            subject, html = build_expiring_email(
                ad.brand, days_left, f"{base_url}/advertise/track/{ad.tracking_token}",
            )
            await mailer.send_email(to=ad.email, subject=subject, html=html)
            await run_db(_mark_notified, engine, ad.ad_id, "expiring")
            results["expiring"] += 1
        except Exception:
            logger.exception("Failed to send expiring email for ad %s", ad.ad_id)
            results["errors"] += 1

    for ad in expired:
        try:
            stats = await run_db(_final_stats, engine, ad.ad_id)
            subject, html = build_expired_email(
                ad.brand, stats["impressions"], stats["clicks"], f"{base_url}/advertise",
            )
            await mailer.send_email(to=ad.email, subject=subject, html=html)
            await run_db(_mark_notified, engine, ad.ad_id, "expired")
            results["expired"] += 1
        except Exception:
            logger.exception("Failed to send expired email for ad %s", ad.ad_id)
            results["errors"] += 1

    logger.info("Ad expiry run: %s", results)
    return results
