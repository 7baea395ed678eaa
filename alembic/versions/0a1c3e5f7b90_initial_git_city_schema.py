"""Initial Git City schema

Revision ID: 0a1c3e5f7b90
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0a1c3e5f7b90"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def _developer_fk(name: str = "developer_id", **kwargs) -> sa.Column:
    return sa.Column(
        name,
        sa.BigInteger(),
        sa.ForeignKey("developers.id", ondelete="CASCADE"),
        **kwargs,
    )


def upgrade() -> None:
    """Create the city, economy, sky-ad and notification tables."""
    op.create_table(
        "developers",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("github_login", sa.String(39), nullable=False, unique=True),
        sa.Column("name", sa.String(255)),
        sa.Column("avatar_url", sa.Text()),
        sa.Column("email", sa.String(320)),
        sa.Column("email_updated_at", sa.DateTime(timezone=True)),
        sa.Column("timezone", sa.String(64)),
        sa.Column("claimed", sa.Boolean(), server_default=sa.false()),
        sa.Column("claimed_by", sa.String(64)),
        sa.Column("claimed_at", sa.DateTime(timezone=True)),
        sa.Column("contributions", sa.Integer(), server_default="0"),
        sa.Column("public_repos", sa.Integer(), server_default="0"),
        sa.Column("total_stars", sa.Integer(), server_default="0"),
        sa.Column("referral_count", sa.Integer(), server_default="0"),
        sa.Column("kudos_count", sa.Integer(), server_default="0"),
        sa.Column("kudos_streak", sa.Integer(), server_default="0"),
        sa.Column("last_kudos_given_date", sa.Date()),
        sa.Column("raid_xp", sa.Integer(), server_default="0"),
        sa.Column("app_streak", sa.Integer(), server_default="0"),
        sa.Column("app_longest_streak", sa.Integer(), server_default="0"),
        sa.Column("last_checkin_date", sa.Date()),
        sa.Column("streak_freezes_available", sa.Integer(), server_default="0"),
        sa.Column("streak_freeze_30d_claimed", sa.Boolean(), server_default=sa.false()),
        sa.Column("district", sa.String(32)),
        sa.Column("district_chosen", sa.Boolean(), server_default=sa.false()),
        sa.Column("district_changes_count", sa.Integer(), server_default="0"),
        sa.Column("district_changed_at", sa.DateTime(timezone=True)),
        sa.Column("last_active_at", sa.DateTime(timezone=True)),
        _created_at(),
    )
    op.create_index("ix_developers_claimed_by", "developers", ["claimed_by"])
    op.create_index("ix_developers_district", "developers", ["district"])

    op.create_table(
        "districts",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("population", sa.Integer(), server_default="0"),
    )

    op.create_table(
        "district_changes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _developer_fk(nullable=False),
        sa.Column("from_district", sa.String(32)),
        sa.Column("to_district", sa.String(32), nullable=False),
        sa.Column("reason", sa.String(32), nullable=False, server_default="user_choice"),
        _created_at(),
    )
    op.create_index(
        "ix_district_changes_dev_time", "district_changes", ["developer_id", "created_at"],
    )

    op.create_table(
        "developer_kudos",
        _developer_fk("giver_id", primary_key=True),
        _developer_fk("receiver_id", primary_key=True),
        sa.Column("given_date", sa.Date(), primary_key=True),
        _created_at(),
    )
    op.create_index(
        "ix_developer_kudos_receiver_date", "developer_kudos", ["receiver_id", "given_date"],
    )

    op.create_table(
        "achievements",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("category", sa.String(32), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("threshold", sa.Integer(), nullable=False),
        sa.Column("tier", sa.String(16), nullable=False, server_default="bronze"),
        sa.Column("reward_type", sa.String(32), nullable=False, server_default="exclusive_badge"),
        sa.Column("reward_item_id", sa.String(64)),
        sa.Column("sort_order", sa.Integer(), server_default="0"),
    )

    op.create_table(
        "developer_achievements",
        _developer_fk(primary_key=True),
        sa.Column(
            "achievement_id",
            sa.String(64),
            sa.ForeignKey("achievements.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "unlocked_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("seen", sa.Boolean(), server_default=sa.false()),
    )

    op.create_table(
        "items",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("category", sa.String(32), nullable=False, server_default="effect"),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("price_usd_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_brl_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("zone", sa.String(16)),
        sa.Column("metadata", postgresql.JSONB(), server_default="{}"),
        _created_at(),
    )

    op.create_table(
        "purchases",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _developer_fk(nullable=False),
        sa.Column(
            "item_id",
            sa.String(64),
            sa.ForeignKey("items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "gifted_to",
            sa.BigInteger(),
            sa.ForeignKey("developers.id", ondelete="SET NULL"),
        ),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("provider_tx_id", sa.String(255)),
        sa.Column("amount_cents", sa.Integer(), server_default="0"),
        sa.Column("currency", sa.String(8), server_default="usd"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        _created_at(),
    )
    op.create_index("ix_purchases_dev_status", "purchases", ["developer_id", "status"])
    op.create_index("ix_purchases_gifted_status", "purchases", ["gifted_to", "status"])
    op.create_index("ix_purchases_provider_tx", "purchases", ["provider_tx_id"])

    op.create_table(
        "developer_customizations",
        _developer_fk(primary_key=True),
        sa.Column("item_id", sa.String(64), primary_key=True),
        sa.Column("config", postgresql.JSONB(), server_default="{}"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "streak_freeze_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _developer_fk(nullable=False),
        sa.Column("action", sa.String(32), nullable=False),
        _created_at(),
    )

    op.create_table(
        "activity_feed",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        _developer_fk("actor_id"),
        sa.Column(
            "target_id",
            sa.BigInteger(),
            sa.ForeignKey("developers.id", ondelete="SET NULL"),
        ),
        sa.Column("metadata", postgresql.JSONB()),
        _created_at(),
    )
    op.create_index("ix_activity_feed_created", "activity_feed", ["created_at"])
    op.create_index(
        "ix_activity_feed_actor_created", "activity_feed", ["actor_id", "created_at"],
    )

    op.create_table(
        "sky_ads",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("brand", sa.String(60), nullable=False, server_default=""),
        sa.Column("text", sa.String(80), nullable=False),
        sa.Column("description", sa.String(200)),
        sa.Column("color", sa.String(7), nullable=False, server_default="#f8d880"),
        sa.Column("bg_color", sa.String(7), nullable=False, server_default="#1a1018"),
        sa.Column("link", sa.Text()),
        sa.Column("vehicle", sa.String(16), nullable=False, server_default="plane"),
        sa.Column("priority", sa.Integer(), server_default="50"),
        sa.Column("active", sa.Boolean(), server_default=sa.false()),
        sa.Column("plan_id", sa.String(32)),
        sa.Column("starts_at", sa.DateTime(timezone=True)),
        sa.Column("ends_at", sa.DateTime(timezone=True)),
        sa.Column("tracking_token", sa.String(32), unique=True),
        sa.Column("stripe_session_id", sa.String(255)),
        sa.Column("purchaser_email", sa.String(320)),
        sa.Column("expiry_notified", sa.String(16)),
        _created_at(),
    )
    op.create_index("ix_sky_ads_active_priority", "sky_ads", ["active", "priority"])
    op.create_index("ix_sky_ads_stripe_session", "sky_ads", ["stripe_session_id"])

    op.create_table(
        "sky_ad_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "ad_id",
            sa.String(64),
            sa.ForeignKey("sky_ads.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(16), nullable=False),
        sa.Column("ip_hash", sa.String(64)),
        sa.Column("user_agent", sa.String(256)),
        sa.Column("country", sa.String(8)),
        sa.Column("github_login", sa.String(39)),
        _created_at(),
    )
    op.create_index("ix_sky_ad_events_ad_type", "sky_ad_events", ["ad_id", "event_type"])
    op.create_index(
        "ix_sky_ad_events_dedup",
        "sky_ad_events",
        ["ip_hash", "ad_id", "event_type", "created_at"],
    )

    op.create_table(
        "notification_preferences",
        _developer_fk(primary_key=True),
        sa.Column("email_enabled", sa.Boolean(), server_default=sa.true()),
        sa.Column("push_enabled", sa.Boolean(), server_default=sa.true()),
        sa.Column("transactional", sa.Boolean(), server_default=sa.true()),
        sa.Column("social", sa.Boolean(), server_default=sa.true()),
        sa.Column("digest", sa.Boolean(), server_default=sa.true()),
        sa.Column("marketing", sa.Boolean(), server_default=sa.false()),
        sa.Column("streak_reminders", sa.Boolean(), server_default=sa.true()),
        sa.Column("digest_frequency", sa.String(16), server_default="realtime"),
        sa.Column("quiet_hours_start", sa.Integer()),
        sa.Column("quiet_hours_end", sa.Integer()),
        sa.Column("channel_overrides", postgresql.JSONB(), server_default="{}"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "notification_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _developer_fk(nullable=False),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("notification_type", sa.String(64), nullable=False),
        sa.Column("category", sa.String(32), nullable=False),
        sa.Column("title", sa.Text(), server_default=""),
        sa.Column("body", sa.Text()),
        sa.Column("dedup_key", sa.String(255)),
        sa.Column("status", sa.String(32), nullable=False, server_default="sent"),
        sa.Column("provider_id", sa.String(255)),
        sa.Column("error_message", sa.Text()),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
        sa.Column("opened_at", sa.DateTime(timezone=True)),
        sa.Column("clicked_at", sa.DateTime(timezone=True)),
        _created_at(),
    )
    op.create_index("ix_notification_log_dedup", "notification_log", ["dedup_key", "channel"])
    op.create_index(
        "ix_notification_log_dev_channel_time",
        "notification_log",
        ["developer_id", "channel", "created_at"],
    )
    op.create_index("ix_notification_log_provider", "notification_log", ["provider_id"])

    op.create_table(
        "notification_suppressions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("identifier", sa.String(320), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False, server_default="email"),
        sa.Column("reason", sa.String(32), nullable=False),
        _created_at(),
        sa.UniqueConstraint("identifier", "channel", name="uq_suppression_identifier_channel"),
    )

    op.create_table(
        "notification_batches",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _developer_fk(nullable=False),
        sa.Column("batch_key", sa.String(255), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("notification_type", sa.String(64), nullable=False),
        sa.Column("closes_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        _created_at(),
    )
    op.create_index(
        "ix_notification_batches_open",
        "notification_batches",
        ["batch_key", "processed_at", "closes_at"],
    )

    op.create_table(
        "notification_batch_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "batch_id",
            sa.Integer(),
            sa.ForeignKey("notification_batches.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_data", postgresql.JSONB(), server_default="{}"),
        _created_at(),
    )

    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _developer_fk(nullable=False),
        sa.Column("token", sa.Text(), nullable=False),
        sa.Column("platform", sa.String(16), nullable=False, server_default="web"),
        sa.Column("active", sa.Boolean(), server_default=sa.true()),
        _created_at(),
    )

    op.create_table(
        "milestone_celebrations",
        sa.Column("milestone", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("total_developers", sa.Integer(), nullable=False),
        sa.Column(
            "reached_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )


def downgrade() -> None:
    """Drop every Git City table, children first."""
    for table in (
        "milestone_celebrations",
        "push_subscriptions",
        "notification_batch_items",
        "notification_batches",
        "notification_suppressions",
        "notification_log",
        "notification_preferences",
        "sky_ad_events",
        "sky_ads",
        "activity_feed",
        "streak_freeze_log",
        "developer_customizations",
        "purchases",
        "items",
        "developer_achievements",
        "achievements",
        "developer_kudos",
        "district_changes",
        "districts",
        "developers",
    ):
        op.drop_table(table)
