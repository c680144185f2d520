# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the API, separate from the ORM models in
# esop_analyzer/db/models.py so embeddings and raw text never leak into
# responses. Wire names are camelCase (documentId, uploadDate, ...).
# =============================================================================
