from __future__ import annotations

import re

from plannersync.models import DEFAULT_EVENT_COLOR

COLOR_PATTERN = re.compile(r"<COLOR:(#[0-9A-Fa-f]{6})>[ \t]*(?:\r?\n)?")
HEX_COLOR_PATTERN = re.compile(r"^#?([0-9A-Fa-f]{6})$")


def normalize_color(value: str | None) -> str:
    match = HEX_COLOR_PATTERN.match(str(value or "").strip())
    if not match:
        return ""
    return f"#{match.group(1).upper()}"


def strip_color_marker(description: str) -> str:
    if not description:
        return ""
    return COLOR_PATTERN.sub("", description).strip()


def extract_color(description: str, default: str = DEFAULT_EVENT_COLOR) -> tuple[str, str]:
    """Return ``(color, description without markers)``."""
    if not description:
        return default, ""
    match = COLOR_PATTERN.search(description)
    color = normalize_color(match.group(1)) if match else default
    return color, strip_color_marker(description)


def upsert_color_marker(description: str, color: str | None) -> str:
    cleaned = strip_color_marker(description)
    normalized = normalize_color(color)
    if not normalized:
        return cleaned
    marker = f"<COLOR:{normalized}>"
    if not cleaned:
        return marker
    return f"{marker}\n{cleaned}"
