from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from plannersync.models import SOURCE_ICLOUD, LocalEvent


@dataclass
class ReconcilePlan:
    upserts: list[LocalEvent] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)
    kept_local: list[str] = field(default_factory=list)
    prune_skipped: bool = False
    reason: str = "applied"


def dedupe_by_id(events: Iterable[LocalEvent]) -> list[LocalEvent]:
    unique: dict[str, LocalEvent] = {}
    for event in events:
        unique[event.id] = event
    return list(unique.values())


def plan_reconciliation(
    *,
    existing: Iterable[LocalEvent],
    fresh: Iterable[LocalEvent],
    synced_calendar_urls: Iterable[str],
    enabled_calendar_urls: Iterable[str],
    protected_ids: Iterable[str] = (),
    allow_empty_prune: bool = False,
) -> ReconcilePlan:
    """Diff the stored icloud records against a freshly pulled set.

    Remote state wins for every pulled id except ``protected_ids`` (records
    the user saved locally while the remote write failed). Stored records
    become delete candidates when their calendar was pulled successfully in
    this pass or is no longer enabled; records of calendars whose pull
    failed are kept. An entirely empty pull never prunes unless explicitly
    allowed.
    """
    synced = set(synced_calendar_urls)
    enabled = set(enabled_calendar_urls)
    protected = set(protected_ids)
    pulled = dedupe_by_id(fresh)
    new_ids = {event.id for event in pulled}
    upserts = [event for event in pulled if event.id not in protected]
    kept_local = sorted(new_ids & protected)

    candidates = [
        event
        for event in existing
        if event.source == SOURCE_ICLOUD and (event.calendar_url in synced or event.calendar_url not in enabled)
    ]
    if not pulled and any(event.calendar_url in synced for event in candidates) and not allow_empty_prune:
        return ReconcilePlan(prune_skipped=True, reason="empty_pull")

    deletes = sorted({event.id for event in candidates} - new_ids)
    return ReconcilePlan(
        upserts=upserts,
        deletes=deletes,
        kept_local=kept_local,
        reason="applied" if upserts or deletes else "no_changes",
    )
