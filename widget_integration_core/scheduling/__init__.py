"""Background refresh scheduling and stale entry cleanup."""

from .definitions import DefinitionRegistry
from .poll_scheduler import PollScheduler
from .stale_entry_reaper import ReaperResult, StaleEntryReaper

__all__ = [
    "DefinitionRegistry",
    "PollScheduler",
    "ReaperResult",
    "StaleEntryReaper",
]
