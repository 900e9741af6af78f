"""Merge-tag substitution and engagement tracking for outgoing email."""

from __future__ import annotations

import re
from urllib.parse import quote

from .contracts import Contact

_FIELD_TAG = re.compile(r"{{\s*field\.([A-Za-z0-9_]+)\s*}}")
_LINK = re.compile(r"""<a\s+href=["']([^"']+)["']""", re.IGNORECASE)


def unsubscribe_url(frontend_url: str, contact: Contact, workflow_id: str) -> str:
    return (
        f"{frontend_url.rstrip('/')}/unsubscribe"
        f"?email={quote(contact.email, safe='')}&auto={workflow_id}"
    )


def personalize_content(content: str | None, contact: Contact, unsubscribe: str) -> str:
    """Replace merge tags with contact data.

    Supports ``{{name}}``, ``{{first_name}}``, ``{{email}}``,
    ``{{unsubscribe_url}}`` and ``{{field.<custom_field>}}``.
    """
    if not content:
        return ""

    replacements = {
        "{{name}}": contact.name or "there",
        "{{first_name}}": contact.first_name,
        "{{email}}": contact.email,
        "{{unsubscribe_url}}": unsubscribe,
    }
    result = content
    for tag, value in replacements.items():
        result = result.replace(tag, value)

    return _FIELD_TAG.sub(
        lambda match: str(contact.custom_fields.get(match.group(1), "")), result
    )


def ensure_unsubscribe_link(html: str, unsubscribe: str) -> str:
    """Append an unsubscribe footer when the template has none."""
    if not html or unsubscribe in html:
        return html
    footer = f'<p style="font-size:12px"><a href="{unsubscribe}">Unsubscribe</a></p>'
    if "</body>" in html:
        return html.replace("</body>", f"{footer}</body>", 1)
    return html + footer


def add_tracking(html: str, tracking_id: str, tracking_url: str) -> str:
    """Add an open pixel and rewrite links through the click tracker."""
    if not html:
        return html

    base = tracking_url.rstrip("/")
    pixel = (
        f'<img src="{base}/track/open/{tracking_id}" width="1" height="1" '
        'style="display:none;" />'
    )
    if "</body>" in html:
        html = html.replace("</body>", f"{pixel}</body>", 1)
    else:
        html += pixel

    def _rewrite(match: re.Match) -> str:
        url = match.group(1)
        if "unsubscribe" in url or url.startswith("#"):
            return match.group(0)
        return f'<a href="{base}/track/click/{tracking_id}?url={quote(url, safe="")}"'

    return _LINK.sub(_rewrite, html)
