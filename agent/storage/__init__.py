"""
Log Shield Agent - Storage Package

Local SQLite persistence for event sets, the retry queue and preference slots.
"""

from .database import AgentDatabase, PreferenceStore

__all__ = ["AgentDatabase", "PreferenceStore"]
