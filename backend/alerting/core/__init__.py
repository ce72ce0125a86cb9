"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON / pretty logging
    errors          — exception hierarchy & handlers
    database        — async SQLAlchemy engine, retry & transaction helpers
    rate_limit      — in-memory and Redis sliding-window limiters
    health          — health check aggregation
    middleware      — request logging, correlation and actor ids
"""
