"""
gitcity.services.email_template — HTML Email Building Blocks
==============================================================

Shared pixel-art shell for every outgoing email plus small helpers
(button, stats table).  All interpolated user text goes through
:func:`escape_html`.
"""

from __future__ import annotations

SITE_URL = "https://thegitcity.com"


def escape_html(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def wrap_in_base_template(body_html: str, unsubscribe_url: str | None = None) -> str:
    footer = (
        f'<a href="{escape_html(unsubscribe_url)}" '
        'style="color: #666; text-decoration: underline;">Unsubscribe</a> | '
        if unsubscribe_url
        else ""
    )
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8" /><meta name="viewport" content="width=device-width, initial-scale=1.0" /></head>
<body style="margin: 0; padding: 0; background: #060a14; font-family: monospace;">
  <div style="max-width: 520px; margin: 0 auto; padding: 32px 24px; background: #0a0f1e; color: #e0d8cc;">
    <div style="text-align: center; margin-bottom: 24px;">
      <h1 style="margin: 0; font-size: 28px; letter-spacing: 4px; color: #c8e64a;">GIT CITY</h1>
    </div>
    <div style="height: 2px; background: linear-gradient(90deg, transparent, #c8e64a, transparent); margin-bottom: 24px;"></div>
    {body_html}
    <div style="height: 2px; background: linear-gradient(90deg, transparent, #222, transparent); margin: 24px 0;"></div>
    <div style="text-align: center; font-size: 12px; color: #666;">
      {footer}<a href="{SITE_URL}" style="color: #666; text-decoration: underline;">thegitcity.com</a>
    </div>
  </div>
</body>
</html>"""


def build_button(text: str, url: str) -> str:
    return f"""<div style="text-align: center; margin: 20px 0;">
  <a href="{escape_html(url)}" style="display: inline-block; padding: 12px 28px; background: #c8e64a; color: #0a0f1e; font-family: monospace; font-weight: bold; font-size: 14px; text-decoration: none; border: 2px solid #c8e64a;">
    {escape_html(text)}
  </a>
</div>"""


def build_stat_row(label: str, value: str | int) -> str:
    return f"""<tr>
  <td style="padding: 8px 12px; border: 1px solid #1a1f2e; color: #c8e64a; font-size: 18px; font-weight: bold;">{value}</td>
  <td style="padding: 8px 12px; border: 1px solid #1a1f2e; color: #e0d8cc;">{escape_html(str(label))}</td>
</tr>"""


def build_stats_table(rows: list[tuple[str, str | int]]) -> str:
    body = "\n".join(build_stat_row(label, value) for label, value in rows)
    return f"""<table style="width: 100%; border-collapse: collapse; margin: 16px 0;">
  {body}
</table>"""
