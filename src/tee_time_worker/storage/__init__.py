"""SQLite storage helpers, ORM tables and migrations runner."""
