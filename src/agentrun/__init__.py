"""
agentrun - durable, resumable workflow runs for AI stock research reports.

Runs execute a fixed pipeline of steps, append every progress event to a
persisted log, and can be followed live or replayed at speed afterwards.
"""

__version__ = "0.1.0"
