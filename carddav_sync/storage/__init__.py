"""
carddav_sync.storage - Local contact store

SQLite-backed contact storage with change notifications.
"""

from carddav_sync.storage.db import ChangeNotification, ContactStore, StoreError

__all__ = ["ChangeNotification", "ContactStore", "StoreError"]
