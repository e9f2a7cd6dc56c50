"""Record store: tables, repositories, engines, and migrations."""
