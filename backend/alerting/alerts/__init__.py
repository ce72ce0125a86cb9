"""
alerts — Community alert dispatch.

Sub-modules:
    models         — Data structures shared across the system
    policy         — Channel fallback policy (which channels, when to stop)
    channels/      — Per-channel delivery backends (email, SMS, push)
    store          — Store interface + in-memory implementation
    sql_store      — SQLAlchemy implementation of the store
    recipients     — Region-based recipient resolution
    delivery_log   — Append-only attempt log and derived statistics
    dispatcher     — Batched concurrent fan-out with fallback
    validation     — Pre-flight checks on dispatch requests
    alert_service  — Campaign orchestration, retry, read models
"""
