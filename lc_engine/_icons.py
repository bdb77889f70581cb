"""
Windows-safe icon map
======================
Windows legacy consoles (cp1252) cannot render emoji.
This module detects the encoding and falls back to ASCII.
"""

from __future__ import annotations

import os
import sys

def _can_render_emoji() -> bool:
    """Return True if stdout can handle emoji characters."""
    if os.environ.get("PYTHONIOENCODING", "").lower().startswith("utf"):
        return True
    encoding = getattr(sys.stdout, "encoding", None) or ""
    return encoding.lower().replace("-", "") in ("utf8", "utf16", "utf32")


_EMOJI = _can_render_emoji()

ICON_CHECK      = "✓"     if _EMOJI else "[v]"
ICON_CROSS      = "✗"     if _EMOJI else "[x]"
ICON_WARN       = "⚠️" if _EMOJI else "[!]"
ICON_LOCK       = "\U0001f512" if _EMOJI else "[L]"
ICON_MONEY      = "\U0001f4b0" if _EMOJI else "[$]"
ICON_SHIP       = "\U0001f6a2" if _EMOJI else "[>]"
ICON_DOC        = "\U0001f4c4" if _EMOJI else "[D]"
ICON_HOURGLASS  = "⏳"     if _EMOJI else "[~]"
ICON_BLOCK      = "\U0001f6ab" if _EMOJI else "[X]"

# ---- Lookup helpers ----

LC_STATUS_ICONS: dict[str, str] = {
    "draft": ICON_HOURGLASS,
    "negotiating": ICON_HOURGLASS,
    "signed": ICON_CHECK,
    "funded": ICON_MONEY,
    "shipped": ICON_SHIP,
    "documents_submitted": ICON_DOC,
    "delivered": ICON_CHECK,
    "completed": ICON_CHECK,
    "disputed": ICON_LOCK,
    "cancelled": ICON_BLOCK,
}

INVITATION_STATUS_ICONS: dict[str, str] = {
    "pending": ICON_HOURGLASS,
    "accepted": ICON_CHECK,
    "rejected": ICON_CROSS,
    "expired": ICON_WARN,
    "cancelled": ICON_BLOCK,
}

OUTCOME_ICONS: dict[str, str] = {
    "SUCCEEDED": ICON_CHECK,
    "FAILED": ICON_CROSS,
    "PENDING": ICON_HOURGLASS,
}
