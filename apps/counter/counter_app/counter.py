from __future__ import annotations

import logging

from .models import CountAction
from .storage import RecordStore

logger = logging.getLogger("counter")


async def apply_action(store: RecordStore, action: CountAction) -> int:
    """
    Run the mutation for `action` and return the count read afterwards.

    UNKNOWN never touches the store beyond the final read.
    """
    if action is CountAction.INCREMENT:
        await store.append_record()
    elif action is CountAction.CLEAR:
        await store.clear_all_records()
    else:
        logger.debug("No-op count action")
    return await store.count_records()
