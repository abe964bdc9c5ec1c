"""
FastAPI routers for the toll reconciliation service.

Each module owns one resource: imports, import sessions, toll records,
mappings and external match candidates.
"""
