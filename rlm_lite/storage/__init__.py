"""SQLite call ledger."""
