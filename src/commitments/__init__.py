"""Commitments — turn journal mentions of appointments and deadlines into reminders."""

__version__ = "0.1.0"
