"""
gitcity.api.routes.cron — Scheduled jobs
==========================================

Every endpoint here is called by the scheduler with
``Authorization: Bearer $CRON_SECRET``.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import Engine

from gitcity.api.deps import get_config, get_engine, get_notifier, verify_cron_secret
from gitcity.config import GitCityConfig
from gitcity.constants import utctoday
from gitcity.database.engine import get_session, run_db
from gitcity.services import notification_senders, sky_ad_service
from gitcity.services.notifications import Notifier, get_preferences
from gitcity.services.social_service import ReminderTarget, streak_reminder_targets

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


def _reminder_plan(engine: Engine) -> list[tuple[ReminderTarget, bool]]:
    """Each target paired with whether it still wants streak reminders."""
    with get_session(engine) as session:
        return [
            (target, get_preferences(session, target.developer_id).streak_reminders)
            for target in streak_reminder_targets(session)
        ]


@router.get("/flush-batches")
async def flush_batches(notifier: Notifier = Depends(get_notifier)):
    processed = await notifier.flush_pending_batches()
    return {"ok": True, "processed": processed}


@router.get("/ad-expiry")
async def ad_expiry(
    engine: Engine = Depends(get_engine),
    cfg: GitCityConfig = Depends(get_config),
    notifier: Notifier = Depends(get_notifier),
):
    results = await sky_ad_service.run_ad_expiry(engine, notifier.mailer, base_url=cfg.base_url)
    return {"ok": True, **results}


@router.get("/streak-reminders")
async def streak_reminders(
    engine: Engine = Depends(get_engine),
    cfg: GitCityConfig = Depends(get_config),
    notifier: Notifier = Depends(get_notifier),
):
    today = utctoday().isoformat()
    stats = {"reminded": 0, "broken": 0, "skipped": 0, "errors": 0}

    for target, wants_reminders in await run_db(_reminder_plan, engine):
        if not wants_reminders:
            stats["skipped"] += 1
            continue
        try:
            if target.already_broken:
                await notifier.send(notification_senders.streak_broken(
                    target.developer_id, target.streak, today, cfg.base_url,
                ))
                stats["broken"] += 1
            else:
                await notifier.send(notification_senders.streak_reminder(
                    target.developer_id, target.streak, target.freezes > 0, today, cfg.base_url,
                ))
                stats["reminded"] += 1
        except Exception:
            logger.exception("Streak reminder failed for dev %s", target.developer_id)
            stats["errors"] += 1

    logger.info("Streak reminders: %s", stats)
    return {"ok": True, **stats}
