"""PostgreSQL -> DuckDB/MotherDuck sync driven by a per-row sync flag."""
