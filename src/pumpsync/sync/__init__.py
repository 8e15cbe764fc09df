"""Upload synchronization for PumpSync.

Modules:
    scheduler — Serial sync coordinator (entry points, queue, pass state machine)
    batcher   — Chunked create/update/delete batches against a sink
    dedup     — Delete resolution and deduplication (id, or timestamp + kind)
"""
