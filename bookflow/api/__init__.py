"""HTTP API layer (FastAPI).

A small versioned `/api/v1` surface to:
- create scrape requests and hand them to the background worker
- list/inspect requests, their books and trace events
- check worker/queue health

Behavior lives in `bookflow.runtime` and `bookflow.storage`; this layer stays thin.
"""
