"""
Donation write path of the field client
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from firefund.client.offline_queue import OfflineQueueManager, TransactionDraft, TransactionStore


logger = logging.getLogger(__name__)


@dataclass
class RecordResult:
    status: str
    transaction_id: Optional[str] = None
    offline_id: Optional[str] = None
    error: Optional[str] = None
    remote: Optional[Dict[str, Any]] = None


class DonationRecorder:
    """Direct insert when online; anything else lands in the offline queue"""

    def __init__(self, manager: OfflineQueueManager, store: TransactionStore):
        self.manager = manager
        self.store = store

    async def record(self, draft: TransactionDraft) -> RecordResult:
        if self.manager.is_online:
            try:
                remote = await self.store.insert(draft.to_remote_payload())
            except Exception as e:
                logger.warning(f"Direct insert failed, queueing donation: {e}")
                offline_id = self.manager.add_pending_transaction(draft)
                return RecordResult(status="queued", offline_id=offline_id, error=str(e))

            return RecordResult(status="synced", transaction_id=remote.get('id'), remote=remote)

        offline_id = self.manager.add_pending_transaction(draft)
        return RecordResult(status="queued", offline_id=offline_id)
