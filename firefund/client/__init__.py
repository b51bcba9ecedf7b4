"""
FireFund field client - offline queue, local storage and server access
"""

from .local_storage import LocalStorage
from .offline_queue import (
    OfflineQueueManager,
    PendingTransaction,
    TransactionDraft,
    TransactionStore,
    STORAGE_KEY,
)
from .remote_store import HttpTransactionStore, RemoteStoreError, sign_in
from .connectivity import ConnectivityMonitor
from .recorder import DonationRecorder, RecordResult

__all__ = [
    'LocalStorage',
    'OfflineQueueManager',
    'PendingTransaction',
    'TransactionDraft',
    'TransactionStore',
    'STORAGE_KEY',
    'HttpTransactionStore',
    'RemoteStoreError',
    'sign_in',
    'ConnectivityMonitor',
    'DonationRecorder',
    'RecordResult',
]
