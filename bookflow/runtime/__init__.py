"""Runtime orchestration for scrape requests.

This layer is responsible for:
- building the per-request job tree from fetched candidates
- binding stage executors to the browser, scorer and webhook collaborators
- moving requests through pending -> in_progress -> done/failed
- hosting the scheduler on a background worker thread

It stays independent from the HTTP layer (`bookflow.api`), so both the CLI and
the API reuse the same execution logic.
"""
