"""Private zone sync: calendar, mail and task reconciliation for the portal."""

__version__ = "0.1.0"
