"""
gitcity.engine.moderation — Sky Ad Content Screening
======================================================

Blocklists for offensive content, scam patterns and suspicious URLs.
Pure functions, no I/O.  Called on every advertiser-supplied field before
it is written to ``sky_ads``.
"""

from __future__ import annotations

import re

BLOCKED_WORDS: tuple[str, ...] = (
    # Scam / phishing
    "free money",
    "guaranteed profit",
    "double your",
    "send btc",
    "send eth",
    "wallet recovery",
    "seed phrase",
    "private key",
    # Offensive / homophobic
    "nigger",
    "faggot",
    "retard",
    "kill yourself",
    "kys",
    "= gay",
    "is gay",
    "are gay",
    "so gay",
    "thats gay",
    "that's gay",
    "ur gay",
    "you're gay",
    "dyke",
    "tranny",
    # Spam
    "buy followers",
    "get rich quick",
    "make money fast",
    "casino bonus",
    "porn",
    "xxx",
    "onlyfans",
    # Impersonation
    "official github",
    "official vercel",
    "official stripe",
)

BLOCKED_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"\b(?:paypal|stripe|github|google|apple)[\s-]*(?:verify|confirm|secure|login|update)",
        re.IGNORECASE,
    ),
    re.compile(r"(?:free|cheap)\s+(?:v-?bucks|robux|nitro)", re.IGNORECASE),
    re.compile(r"(?:crypto|nft)\s+(?:giveaway|airdrop)", re.IGNORECASE),
)

SUSPICIOUS_LINK_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Phishing lookalikes
    re.compile(r"paypal[.-](?:verify|confirm|secure|login)", re.IGNORECASE),
    re.compile(r"login[.-]confirm", re.IGNORECASE),
    re.compile(r"account[.-](?:verify|secure|update|recovery)", re.IGNORECASE),
    re.compile(r"github[.-](?:verify|secure|auth|login)(?!\.com)", re.IGNORECASE),
    # Abused TLDs
    re.compile(r"\.(?:xyz|top|buzz|click|link|gq|ml|tk|cf|ga)$", re.IGNORECASE),
    # Raw IP hosts
    re.compile(r"https?://\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}"),
    # Four or more subdomain levels
    re.compile(r"https?://(?:[^/]*\.){4,}"),
)

PROHIBITED_LANGUAGE = "Content contains prohibited language"
PROHIBITED_PATTERN = "Content matches a prohibited pattern"


def contains_blocked_content(text: str) -> str | None:
    """Return the rejection reason for *text*, or ``None`` if it is clean."""
    lower = text.lower()
    for word in BLOCKED_WORDS:
        if word in lower:
            return PROHIBITED_LANGUAGE

    for pattern in BLOCKED_PATTERNS:
        if pattern.search(text):
            return PROHIBITED_PATTERN

    return None


def is_suspicious_link(url: str) -> bool:
    return any(pattern.search(url) for pattern in SUSPICIOUS_LINK_PATTERNS)
