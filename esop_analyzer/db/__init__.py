# =============================================================================
# Database Package
# =============================================================================
# engine.py → async/sync engines, session dependencies, schema bootstrap
# models.py → ORM models (documents, chunks, metrics, cache, jobs, audit)
# =============================================================================
