"""Transcript persistence for llm_toolloop."""
from .db import Database
from .message_store import MessageStore, SQLiteMessageStore

__all__ = ['Database', 'MessageStore', 'SQLiteMessageStore']
