"""SheetSync — chat message to Google Sheets synchronization engine."""

__version__ = "0.1.0"
