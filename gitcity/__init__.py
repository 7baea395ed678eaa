"""
Git City — GitHub developers as buildings in a living city
============================================================
Backend API for the city: social interactions (kudos, check-in streaks,
districts, achievements), the virtual economy (shop items, gifting, sky
ads) and the notification/email engine fed by payment and email webhooks.

Package layout::

    gitcity/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Districts, zones, item names, tiers
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Districts, achievements, item catalog
    ├── engine/
    │   ├── achievements.py # Pure unlock checks
    │   ├── moderation.py  # Ad text / link screening
    │   ├── sky_ads.py     # Ad rotation, validation, plans
    │   └── streaks.py     # Check-in + kudos streak math
    ├── services/          # DB + provider side effects
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Auth, engine, config, notifier
        ├── rate_limit.py  # In-memory fixed-window limiter
        └── routes/        # REST endpoints + webhooks + cron
"""

__version__ = "0.1.0"
