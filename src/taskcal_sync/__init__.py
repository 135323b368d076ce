"""Two-way synchronization between a local task list and Google / Outlook calendars."""

__version__ = "1.0.0"
