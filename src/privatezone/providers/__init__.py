"""Remote fetch adapters for Google Calendar, Gmail, Google Tasks and Microsoft Graph."""
