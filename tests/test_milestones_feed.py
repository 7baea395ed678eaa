"""
tests/test_milestones_feed.py — Milestones, Activity Feed & Scheduled Jobs
============================================================================
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from conftest import CRON_HEADERS, make_developer, run_after_first_call
from sqlalchemy import select
from sqlalchemy.orm import Session

from gitcity.constants import utcnow, utctoday
from gitcity.database.models import (
    ActivityFeed,
    MilestoneCelebration,
    NotificationBatch,
    NotificationBatchItem,
    NotificationPreference,
)
from gitcity.services import feed_service, milestone_service


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------
class TestMilestoneService:
    @pytest.mark.parametrize("total,expected", [
        (9_999, None),
        (10_000, 10_000),
        (17_250, 15_000),
        (250_000, 100_000),
    ])
    def test_highest_crossed(self, total, expected):
        assert milestone_service.highest_crossed(total) == expected

    def test_record_is_idempotent(self, db_session):
        first = milestone_service.record_milestone(db_session, 10_200)
        db_session.commit()
        again = milestone_service.record_milestone(db_session, 10_900)

        assert first.is_new
        assert not again.is_new
        assert again.milestone == 10_000
        assert db_session.get(MilestoneCelebration, 10_000).total_developers == 10_200

    def test_concurrent_celebration_keeps_the_first_reached_at(self, file_engine, monkeypatch):
        first_reached = datetime(2026, 5, 4, 9, 30, tzinfo=timezone.utc)

        def other_request():
            with Session(file_engine) as other:
                other.add(MilestoneCelebration(
                    milestone=10_000, total_developers=10_050, reached_at=first_reached,
                ))
                other.commit()

        with Session(file_engine) as session:
            fired = run_after_first_call(
                monkeypatch, session, "get", other_request,
                when=lambda entity, *args, **kwargs: entity is MilestoneCelebration,
            )
            result = milestone_service.record_milestone(session, 10_200)
            session.commit()

        assert fired
        assert not result.is_new
        assert result.reached_at == first_reached
        with Session(file_engine) as session:
            assert session.get(MilestoneCelebration, 10_000).total_developers == 10_050


class TestMilestoneRoutes:
    def test_requires_cron_secret(self, client):
        resp = client.post("/api/milestones", json={"total_developers": 10_500})
        assert resp.status_code == 401

    @pytest.mark.parametrize("body", [{}, {"total_developers": "many"}, {"total_developers": True}])
    def test_missing_total(self, client, body):
        resp = client.post("/api/milestones", json=body, headers=CRON_HEADERS)
        assert resp.status_code == 400
        assert resp.json() == {"detail": "missing total_developers"}

    def test_below_first_milestone(self, client, mailer):
        resp = client.post("/api/milestones", json={"total_developers": 9_000}, headers=CRON_HEADERS)
        assert resp.json() == {"celebrated": False}
        assert mailer.sent == []

    def test_celebrates_and_emails_claimed_developers(self, client, db_engine, mailer):
        with Session(db_engine) as session:
            make_developer(session, 1, "alice")
            make_developer(session, 2, "bob")
            make_developer(session, 3, "carol", claimed=False)
            make_developer(session, 4, "dave", email=None)

        resp = client.post("/api/milestones", json={"total_developers": 10_500}, headers=CRON_HEADERS)
        body = resp.json()
        assert body["celebrated"] is True
        assert body["milestone"] == 10_000
        assert body["reached_at"]

        assert sorted(m["to"] for m in mailer.sent) == ["alice@example.com", "bob@example.com"]
        assert mailer.subjects_to("alice@example.com") == ["Git City hit 10,000 developers!"]

        # A repeat call reports the same milestone without emailing again.
        again = client.post("/api/milestones", json={"total_developers": 10_600}, headers=CRON_HEADERS)
        assert again.json()["reached_at"] == body["reached_at"]
        assert len(mailer.sent) == 2

    def test_list(self, client):
        client.post("/api/milestones", json={"total_developers": 10_000}, headers=CRON_HEADERS)
        client.post("/api/milestones", json={"total_developers": 15_000}, headers=CRON_HEADERS)

        resp = client.get("/api/milestones")
        assert [m["milestone"] for m in resp.json()] == [15_000, 10_000]


# ---------------------------------------------------------------------------
# Activity feed
# ---------------------------------------------------------------------------
T0 = datetime(2026, 5, 4, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def feed(db_engine):
    """Five events, one minute apart; the newest has the highest id."""
    with Session(db_engine) as session:
        make_developer(session, 1, "alice")
        make_developer(session, 2, "bob")
        for i in range(5):
            session.add(ActivityFeed(
                event_type="kudos_given", actor_id=1, target_id=2,
                metadata_={"n": i}, created_at=T0 + timedelta(minutes=i),
            ))
        session.commit()
        return list(session.scalars(select(ActivityFeed.id).order_by(ActivityFeed.id)))


class TestFeed:
    @pytest.fixture(autouse=True)
    def _no_pruning(self, monkeypatch):
        monkeypatch.setattr(feed_service.random, "random", lambda: 0.99)

    def test_newest_first_with_developers(self, client, feed):
        body = client.get("/api/feed?limit=2").json()

        assert [e["id"] for e in body["events"]] == [feed[4], feed[3]]
        assert body["has_more"] is True
        first = body["events"][0]
        assert first["metadata"] == {"n": 4}
        assert first["actor"]["login"] == "alice"
        assert first["target"]["login"] == "bob"

    def test_before_cursor_pages_backwards(self, client, feed):
        body = client.get(f"/api/feed?limit=3&before={feed[2]}").json()
        assert [e["id"] for e in body["events"]] == [feed[1], feed[0]]
        assert body["has_more"] is False

    def test_unknown_cursor_starts_from_the_top(self, client, feed):
        body = client.get("/api/feed?before=99999").json()
        assert len(body["events"]) == 5
        assert body["has_more"] is False

    def test_limit_is_capped(self, client, feed):
        resp = client.get("/api/feed?limit=500")
        assert resp.status_code == 200
        assert len(resp.json()["events"]) == 5

    def test_empty_feed(self, client):
        assert client.get("/api/feed").json() == {"events": [], "has_more": False}

    def test_sets_cache_control(self, client):
        resp = client.get("/api/feed?today=1")
        assert resp.headers["cache-control"] == "public, s-maxage=30, stale-while-revalidate=60"

    def test_today_flag_backfills_from_the_last_week(self, client, db_engine):
        now = utcnow()
        with Session(db_engine) as session:
            session.add(ActivityFeed(event_type="kudos_given", created_at=now - timedelta(days=3)))
            session.add(ActivityFeed(event_type="kudos_given", created_at=now - timedelta(days=10)))
            session.commit()

        assert len(client.get("/api/feed?today=1").json()["events"]) == 1
        assert len(client.get("/api/feed?today=0").json()["events"]) == 2


def _event_at(session, when, event_type="kudos_given"):
    event = ActivityFeed(event_type=event_type, created_at=when)
    session.add(event)
    session.flush()
    return event


class TestFeedToday:
    NOW = datetime(2026, 5, 4, 15, 0, tzinfo=timezone.utc)

    def test_keeps_only_events_since_midnight(self, db_session):
        yesterday = _event_at(db_session, self.NOW - timedelta(hours=16))
        for hour in range(8):
            _event_at(db_session, self.NOW - timedelta(hours=hour))

        body = feed_service.list_events(db_session, today=True, now=self.NOW)

        assert len(body["events"]) == 8
        assert yesterday.id not in {e["id"] for e in body["events"]}

    def test_quiet_day_backfills_from_the_last_week(self, db_session):
        _event_at(db_session, self.NOW - timedelta(hours=1))
        for days in (2, 3, 6):
            _event_at(db_session, self.NOW - timedelta(days=days))
        stale = _event_at(db_session, self.NOW - timedelta(days=8))

        body = feed_service.list_events(db_session, today=True, now=self.NOW)

        assert len(body["events"]) == 4
        assert stale.id not in {e["id"] for e in body["events"]}

    def test_backfill_only_applies_to_the_first_page(self, db_session):
        older = _event_at(db_session, self.NOW - timedelta(hours=2))
        newer = _event_at(db_session, self.NOW - timedelta(hours=1))
        _event_at(db_session, self.NOW - timedelta(days=2))

        body = feed_service.list_events(db_session, before=newer.id, today=True, now=self.NOW)

        assert [e["id"] for e in body["events"]] == [older.id]

    def test_without_flag_no_date_filter(self, db_session):
        _event_at(db_session, self.NOW - timedelta(days=20))
        assert len(feed_service.list_events(db_session, now=self.NOW)["events"]) == 1


class TestFeedPruning:
    NOW = datetime(2026, 5, 4, 15, 0, tzinfo=timezone.utc)

    def test_prune_removes_events_past_retention(self, db_session):
        _event_at(db_session, self.NOW - timedelta(days=31))
        kept = _event_at(db_session, self.NOW - timedelta(days=29))

        assert feed_service.prune_old_events(db_session, now=self.NOW) == 1
        assert db_session.scalars(select(ActivityFeed.id)).all() == [kept.id]

    def test_maybe_prune_respects_the_roll(self, db_session):
        _event_at(db_session, utcnow() - timedelta(days=40))

        assert feed_service.maybe_prune(db_session, roll=lambda: 0.5) == 0
        assert feed_service.maybe_prune(db_session, roll=lambda: 0.0) == 1

    def test_feed_request_prunes_and_commits(self, client, db_engine, monkeypatch):
        monkeypatch.setattr(feed_service.random, "random", lambda: 0.0)
        with Session(db_engine) as session:
            session.add(ActivityFeed(event_type="kudos_given", created_at=utcnow() - timedelta(days=45)))
            session.add(ActivityFeed(event_type="kudos_given", created_at=utcnow()))
            session.commit()

        body = client.get("/api/feed").json()

        assert len(body["events"]) == 1
        with Session(db_engine) as session:
            assert len(session.scalars(select(ActivityFeed)).all()) == 1


# ---------------------------------------------------------------------------
# Cron jobs
# ---------------------------------------------------------------------------
class TestStreakRemindersCron:
    def test_reminds_breaks_and_skips(self, client, db_engine, mailer):
        today = utctoday()
        with Session(db_engine) as session:
            make_developer(session, 1, "due", app_streak=5, last_checkin_date=today - timedelta(days=1))
            make_developer(session, 2, "lapsed", app_streak=9, last_checkin_date=today - timedelta(days=4))
            make_developer(session, 3, "quiet", app_streak=6, last_checkin_date=today - timedelta(days=1))
            session.add(NotificationPreference(developer_id=3, streak_reminders=False))
            session.commit()

        resp = client.get("/api/cron/streak-reminders", headers=CRON_HEADERS)
        assert resp.json() == {"ok": True, "reminded": 1, "broken": 1, "skipped": 1, "errors": 0}

        assert mailer.subjects_to("due@example.com") == ["Don't lose your 5-day streak!"]
        assert mailer.subjects_to("lapsed@example.com") == ["Your 9-day streak ended. Start fresh!"]
        assert mailer.subjects_to("quiet@example.com") == []

    def test_recently_active_developers_are_not_nagged(self, client, db_engine, mailer):
        with Session(db_engine) as session:
            make_developer(
                session, 1, "due", app_streak=5,
                last_checkin_date=utctoday() - timedelta(days=1),
                last_active_at=utcnow(),
            )

        resp = client.get("/api/cron/streak-reminders", headers=CRON_HEADERS)
        assert resp.json()["reminded"] == 1
        assert mailer.sent == []

    def test_requires_secret(self, client):
        resp = client.get("/api/cron/streak-reminders", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401


class TestFlushBatchesCron:
    def test_flushes_closed_batches(self, client, db_engine, mailer):
        with Session(db_engine) as session:
            make_developer(session, 1, "alice")
            batch = NotificationBatch(
                developer_id=1, batch_key="kudos:1:email", channel="email",
                notification_type="kudos_received", closes_at=utcnow() - timedelta(minutes=1),
            )
            batch.items = [
                NotificationBatchItem(event_data={"body": "@bob gave you kudos."}),
                NotificationBatchItem(event_data={"body": "@carol gave you kudos."}),
            ]
            session.add(batch)
            session.commit()

        resp = client.get("/api/cron/flush-batches", headers=CRON_HEADERS)
        assert resp.json() == {"ok": True, "processed": 1}
        assert mailer.subjects_to("alice@example.com") == ["You received 2 kudos!"]

        with Session(db_engine) as session:
            assert session.scalar(select(NotificationBatch)).processed_at is not None

    def test_open_batches_wait(self, client, db_engine, mailer):
        with Session(db_engine) as session:
            make_developer(session, 1, "alice")
            session.add(NotificationBatch(
                developer_id=1, batch_key="kudos:1:email", channel="email",
                notification_type="kudos_received", closes_at=utcnow() + timedelta(minutes=30),
            ))
            session.commit()

        resp = client.get("/api/cron/flush-batches", headers=CRON_HEADERS)
        assert resp.json() == {"ok": True, "processed": 0}
        assert mailer.sent == []
