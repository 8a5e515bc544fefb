"""DuckDB persistence: markets, outcomes, publish attempts."""
