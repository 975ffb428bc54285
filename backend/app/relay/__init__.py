"""
relay — Real-time SOS alert and notification delivery core.

Sub-modules:
    models        — Alert / Notification / Message records, roles, tables
    state_machine — Alert lifecycle edges and the admin reopen override
    stores        — Store contract + in-memory implementation
    sql_store     — SQLAlchemy-backed store implementation
    change_feed   — Channel-keyed push subscriptions over committed writes
    redis_relay   — Cross-process fan-out of the change feed via Redis pub/sub
    events        — Validated decode of raw change payloads
    reconciler    — Snapshot + live events + optimistic writes → one view
    views         — Per-session live views (alert center, inbox, conversation)
    feedback      — Best-effort sound / vibration cues
    dispatch      — Human dispatch links (WhatsApp + maps) and dispatch ledger
    identity      — Session / role contract
    services      — Guest SOS submission and responder actions
    runtime       — Wiring of stores, feed and bridge for the server process
"""
