# portfolio_core/data/__init__.py
"""Remote service adapters and record helpers."""

from portfolio_core.data.supabase_client import (
    AuthSession,
    InMemoryRemote,
    RemoteService,
    SupabaseRemote,
)
from portfolio_core.data.utils import clean_record, clean_value, matches

__all__ = [
    "AuthSession",
    "InMemoryRemote",
    "RemoteService",
    "SupabaseRemote",
    "clean_record",
    "clean_value",
    "matches",
]
