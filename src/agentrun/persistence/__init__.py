"""
Persistence package.

SQLite-backed storage shared by every component:
- Database connection and schema
- RunStore for runs and their ordered steps
- EventLog for the append-only, per-run event sequence
"""

from agentrun.persistence.database import Database
from agentrun.persistence.event_log import EventLog
from agentrun.persistence.runs import RunStore

__all__ = ["Database", "EventLog", "RunStore"]
