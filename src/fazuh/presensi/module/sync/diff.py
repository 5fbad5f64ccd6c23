from typing import List, Optional

from fazuh.presensi.model import ContentItem
from fazuh.presensi.model import SnapshotEntry


def find_new_items(current: List[ContentItem], previous: List[SnapshotEntry]) -> List[ContentItem]:
    """Returns items whose identifier is absent from the previous snapshot.

    Portal order is preserved. Items that disappeared are ignored.
    """
    seen = {entry.item_id for entry in previous}
    return [item for item in current if item.item_id not in seen]


def build_snapshot(
    items: List[ContentItem],
    observed_at: str,
    previous: Optional[List[SnapshotEntry]] = None,
) -> List[SnapshotEntry]:
    """One entry per listed item, in portal order.

    Items already in `previous` keep the timestamp they were first seen at.
    """
    first_seen = {entry.item_id: entry.timestamp for entry in previous or []}
    return [
        SnapshotEntry(
            item_id=item.item_id,
            title=item.title,
            timestamp=first_seen.get(item.item_id, observed_at),
        )
        for item in items
    ]
