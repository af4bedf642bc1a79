"""
tablesync

Keeps externally-sourced tables (warehouse tables, spreadsheet imports) fresh
in local memory: schedule triggers, bounded concurrent dispatch, retry with
backoff and structured cancellation.
"""

__version__ = "0.1.0"
