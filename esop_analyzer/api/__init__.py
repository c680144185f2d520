# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter mounted under /api:
#   - documents.py: PDF upload, job polling, document listing (/api/pdf)
#   - questions.py: RAG question answering, alignment check, history
#   - metrics.py:   stored, live, validated, focused AI and enhanced metrics
#   - audit.py:     audit logging and security headers middleware
#   - deps.py:      shared lookups and request helpers
# =============================================================================
