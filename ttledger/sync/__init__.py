"""
Remote sync for ttledger.

Sync clients only use the store contract (upsert / get / search /
last_sync_time); the store knows nothing about them.
"""

from .teamwork import SyncResult, TeamworkClient, TeamworkSync

__all__ = ["SyncResult", "TeamworkClient", "TeamworkSync"]
