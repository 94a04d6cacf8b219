"""Scribe draft sessions: buffered editor state with debounced autosave."""

from scribe.drafts.session import DraftSession, SaveReason

__all__ = ["DraftSession", "SaveReason"]
