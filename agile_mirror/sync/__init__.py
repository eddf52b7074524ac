# Sync Package
from .changelog import ChangeHistoryIngestor
from .orchestrator import SyncOrchestrator
from .selection import select_sprints_to_sync

__all__ = ['ChangeHistoryIngestor', 'SyncOrchestrator', 'select_sprints_to_sync']
