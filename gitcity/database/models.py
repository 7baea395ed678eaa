"""
gitcity.database.models — SQLAlchemy 2.0 Data Models
=====================================================

Tables:
- developers          — GitHub users rendered as buildings (GitHub id PK)
- districts           — Thematic zones with population counters
- district_changes    — Append-only log of district moves
- developer_kudos     — One kudos per giver/receiver/day
- achievements        — Unlock catalog (category + threshold)
- developer_achievements — Unlocks per developer
- items               — Shop catalog
- purchases           — Item ownership ledger (paid, gifted, free, achievement)
- developer_customizations — Loadout and per-item config
- streak_freeze_log   — Freeze grants / consumption audit trail
- activity_feed       — Public city feed
- sky_ads             — Paid + house in-world advertisements
- sky_ad_events       — Impressions and clicks
- notification_preferences — Per-developer channel/category toggles
- notification_log    — Every dispatched notification (dedup + rate limit)
- notification_suppressions — Bounced / complained addresses
- notification_batches — Open digest windows
- notification_batch_items — Events waiting in a digest window
- push_subscriptions  — Device tokens for the push channel
- milestone_celebrations — Community size milestones reached
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Git City ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class PurchaseStatus(enum.StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class PaymentProvider(enum.StrEnum):
    STRIPE = "stripe"
    ABACATEPAY = "abacatepay"
    NOWPAYMENTS = "nowpayments"
    FREE = "free"
    ACHIEVEMENT = "achievement"


class AdVehicle(enum.StrEnum):
    PLANE = "plane"
    BLIMP = "blimp"
    BILLBOARD = "billboard"
    ROOFTOP_SIGN = "rooftop_sign"
    LED_WRAP = "led_wrap"


class AdEventType(enum.StrEnum):
    IMPRESSION = "impression"
    CLICK = "click"
    CTA_CLICK = "cta_click"


class FeedEventType(enum.StrEnum):
    ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
    KUDOS_GIVEN = "kudos_given"
    STREAK_CHECKIN = "streak_checkin"
    ITEM_PURCHASED = "item_purchased"
    GIFT_SENT = "gift_sent"
    DISTRICT_CHANGED = "district_changed"
    MILESTONE_REACHED = "milestone_reached"


# ---------------------------------------------------------------------------
# Developers — one row per GitHub user in the city
# ---------------------------------------------------------------------------
class Developer(Base):
    __tablename__ = "developers"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    github_login: Mapped[str] = mapped_column(String(39), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), default=None)
    avatar_url: Mapped[str | None] = mapped_column(Text, default=None)
    email: Mapped[str | None] = mapped_column(String(320), default=None)
    email_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    timezone: Mapped[str | None] = mapped_column(String(64), default=None)

    # Ownership (Supabase auth user id)
    claimed: Mapped[bool] = mapped_column(Boolean, default=False)
    claimed_by: Mapped[str | None] = mapped_column(String(64), default=None)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    # GitHub stats (refreshed by the city builder)
    contributions: Mapped[int] = mapped_column(Integer, default=0)
    public_repos: Mapped[int] = mapped_column(Integer, default=0)
    total_stars: Mapped[int] = mapped_column(Integer, default=0)

    # Social
    referral_count: Mapped[int] = mapped_column(Integer, default=0)
    kudos_count: Mapped[int] = mapped_column(Integer, default=0)
    kudos_streak: Mapped[int] = mapped_column(Integer, default=0)
    last_kudos_given_date: Mapped[date | None] = mapped_column(Date, default=None)
    raid_xp: Mapped[int] = mapped_column(Integer, default=0)

    # Check-in streak
    app_streak: Mapped[int] = mapped_column(Integer, default=0)
    app_longest_streak: Mapped[int] = mapped_column(Integer, default=0)
    last_checkin_date: Mapped[date | None] = mapped_column(Date, default=None)
    streak_freezes_available: Mapped[int] = mapped_column(Integer, default=0)
    streak_freeze_30d_claimed: Mapped[bool] = mapped_column(Boolean, default=False)

    # District
    district: Mapped[str | None] = mapped_column(String(32), default=None)
    district_chosen: Mapped[bool] = mapped_column(Boolean, default=False)
    district_changes_count: Mapped[int] = mapped_column(Integer, default=0)
    district_changed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    last_active_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_developers_claimed_by", "claimed_by"),
        Index("ix_developers_district", "district"),
    )

    def __repr__(self) -> str:
        return f"<Developer id={self.id} login={self.github_login!r}>"


# ---------------------------------------------------------------------------
# Districts — thematic zones
# ---------------------------------------------------------------------------
class District(Base):
    __tablename__ = "districts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    population: Mapped[int] = mapped_column(Integer, default=0)

    def __repr__(self) -> str:
        return f"<District id={self.id!r} population={self.population}>"


class DistrictChange(Base):
    __tablename__ = "district_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    developer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="CASCADE"), nullable=False
    )
    from_district: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_district: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False, default="user_choice")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_district_changes_dev_time", "developer_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Kudos — one per giver → receiver per UTC day
# ---------------------------------------------------------------------------
class DeveloperKudos(Base):
    __tablename__ = "developer_kudos"

    giver_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="CASCADE"), primary_key=True
    )
    receiver_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="CASCADE"), primary_key=True
    )
    given_date: Mapped[date] = mapped_column(Date, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_developer_kudos_receiver_date", "receiver_id", "given_date"),
    )

    def __repr__(self) -> str:
        return f"<DeveloperKudos {self.giver_id}→{self.receiver_id} on {self.given_date}>"


# ---------------------------------------------------------------------------
# Achievements — catalog + unlocks
# ---------------------------------------------------------------------------
class Achievement(Base):
    __tablename__ = "achievements"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="bronze")
    reward_type: Mapped[str] = mapped_column(
        String(32), nullable=False, default="exclusive_badge"
    )
    reward_item_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    def __repr__(self) -> str:
        return f"<Achievement id={self.id!r} {self.category}>={self.threshold}>"


class DeveloperAchievement(Base):
    __tablename__ = "developer_achievements"

    developer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="CASCADE"), primary_key=True
    )
    achievement_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("achievements.id", ondelete="CASCADE"), primary_key=True
    )
    unlocked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    seen: Mapped[bool] = mapped_column(Boolean, default=False)

    achievement: Mapped[Achievement] = relationship()

    def __repr__(self) -> str:
        return f"<DeveloperAchievement dev={self.developer_id} achievement={self.achievement_id}>"


# ---------------------------------------------------------------------------
# Shop — items, purchases, customizations
# ---------------------------------------------------------------------------
class Item(Base):
    __tablename__ = "items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="effect")
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_usd_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_brl_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    zone: Mapped[str | None] = mapped_column(String(16), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Item id={self.id!r} usd={self.price_usd_cents}>"


class Purchase(Base):
    __tablename__ = "purchases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    developer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="CASCADE"), nullable=False
    )
    item_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("items.id", ondelete="CASCADE"), nullable=False
    )
    # Set when the purchase is a gift: the developer that receives the item.
    gifted_to: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="SET NULL"), nullable=True
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_tx_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(8), default="usd")
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PurchaseStatus.PENDING
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    item: Mapped[Item] = relationship()

    __table_args__ = (
        Index("ix_purchases_dev_status", "developer_id", "status"),
        Index("ix_purchases_gifted_status", "gifted_to", "status"),
        Index("ix_purchases_provider_tx", "provider_tx_id"),
    )

    @property
    def owner_id(self) -> int:
        """Developer that ends up owning the item (receiver for gifts)."""
        return self.gifted_to if self.gifted_to is not None else self.developer_id

    def __repr__(self) -> str:
        return f"<Purchase id={self.id} dev={self.developer_id} item={self.item_id} {self.status}>"


class DeveloperCustomization(Base):
    __tablename__ = "developer_customizations"

    developer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="CASCADE"), primary_key=True
    )
    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    config: Mapped[dict] = mapped_column(JSONB, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class StreakFreezeLog(Base):
    __tablename__ = "streak_freeze_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    developer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="CASCADE"), nullable=False
    )
    # granted_milestone | purchased | consumed
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


# ---------------------------------------------------------------------------
# ActivityFeed — public city feed
# ---------------------------------------------------------------------------
class ActivityFeed(Base):
    __tablename__ = "activity_feed"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="CASCADE"), nullable=True
    )
    target_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="SET NULL"), nullable=True
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_activity_feed_created", "created_at"),
        Index("ix_activity_feed_actor_created", "actor_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ActivityFeed id={self.id} type={self.event_type} actor={self.actor_id}>"


# ---------------------------------------------------------------------------
# Sky ads — planes, blimps, billboards, rooftop signs, LED wraps
# ---------------------------------------------------------------------------
class SkyAd(Base):
    __tablename__ = "sky_ads"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    brand: Mapped[str] = mapped_column(String(60), nullable=False, default="")
    text: Mapped[str] = mapped_column(String(80), nullable=False)
    description: Mapped[str | None] = mapped_column(String(200), nullable=True)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#f8d880")
    bg_color: Mapped[str] = mapped_column(String(7), nullable=False, default="#1a1018")
    link: Mapped[str | None] = mapped_column(Text, nullable=True)
    vehicle: Mapped[str] = mapped_column(String(16), nullable=False, default=AdVehicle.PLANE)
    priority: Mapped[int] = mapped_column(Integer, default=50)
    active: Mapped[bool] = mapped_column(Boolean, default=False)
    plan_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tracking_token: Mapped[str | None] = mapped_column(String(32), nullable=True, unique=True)
    stripe_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    purchaser_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    # None → not yet emailed, "expiring" → 48h warning sent, "expired" → final stats sent
    expiry_notified: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_sky_ads_active_priority", "active", "priority"),
        Index("ix_sky_ads_stripe_session", "stripe_session_id"),
    )

    def __repr__(self) -> str:
        return f"<SkyAd id={self.id!r} vehicle={self.vehicle} active={self.active}>"


class SkyAdEvent(Base):
    __tablename__ = "sky_ad_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ad_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("sky_ads.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(16), nullable=False)
    ip_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(256), nullable=True)
    country: Mapped[str | None] = mapped_column(String(8), nullable=True)
    github_login: Mapped[str | None] = mapped_column(String(39), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_sky_ad_events_ad_type", "ad_id", "event_type"),
        Index("ix_sky_ad_events_dedup", "ip_hash", "ad_id", "event_type", "created_at"),
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    developer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="CASCADE"), primary_key=True
    )
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    push_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    transactional: Mapped[bool] = mapped_column(Boolean, default=True)
    social: Mapped[bool] = mapped_column(Boolean, default=True)
    digest: Mapped[bool] = mapped_column(Boolean, default=True)
    marketing: Mapped[bool] = mapped_column(Boolean, default=False)
    streak_reminders: Mapped[bool] = mapped_column(Boolean, default=True)
    digest_frequency: Mapped[str] = mapped_column(String(16), default="realtime")
    quiet_hours_start: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quiet_hours_end: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # {"email": {"social": false}, ...}: per-channel category overrides
    channel_overrides: Mapped[dict] = mapped_column(JSONB, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class NotificationLog(Base):
    __tablename__ = "notification_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    developer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="CASCADE"), nullable=False
    )
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(Text, default="")
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    dedup_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # sent | failed | pending_implementation | bounced | complained
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="sent")
    provider_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    clicked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_notification_log_dedup", "dedup_key", "channel"),
        Index("ix_notification_log_dev_channel_time", "developer_id", "channel", "created_at"),
        Index("ix_notification_log_provider", "provider_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationLog id={self.id} dev={self.developer_id} "
            f"{self.channel}/{self.notification_type} {self.status}>"
        )


class NotificationSuppression(Base):
    __tablename__ = "notification_suppressions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(String(320), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False, default="email")
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("identifier", "channel", name="uq_suppression_identifier_channel"),
    )


class NotificationBatch(Base):
    __tablename__ = "notification_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    developer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="CASCADE"), nullable=False
    )
    batch_key: Mapped[str] = mapped_column(String(255), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    closes_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    items: Mapped[list[NotificationBatchItem]] = relationship(
        back_populates="batch", cascade="all, delete-orphan",
        order_by="NotificationBatchItem.id",
    )

    __table_args__ = (
        Index("ix_notification_batches_open", "batch_key", "processed_at", "closes_at"),
    )


class NotificationBatchItem(Base):
    __tablename__ = "notification_batch_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("notification_batches.id", ondelete="CASCADE"), nullable=False
    )
    event_data: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    batch: Mapped[NotificationBatch] = relationship(back_populates="items")


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    developer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("developers.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(Text, nullable=False)
    platform: Mapped[str] = mapped_column(String(16), nullable=False, default="web")
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


# ---------------------------------------------------------------------------
# Milestone celebrations — community size milestones
# ---------------------------------------------------------------------------
class MilestoneCelebration(Base):
    __tablename__ = "milestone_celebrations"

    milestone: Mapped[int] = mapped_column(Integer, primary_key=True)
    total_developers: Mapped[int] = mapped_column(Integer, nullable=False)
    reached_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<MilestoneCelebration {self.milestone}>"
