"""SQLite storage layer: engine policy, migrations and ORM tables."""
