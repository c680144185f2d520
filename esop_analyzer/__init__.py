# =============================================================================
# ESOP Valuation Analyzer
# =============================================================================
# Upload ESOP valuation reports, ask questions about them with
# retrieval-augmented generation, and extract validated financial metrics.
#
# Package structure:
#   esop_analyzer/
#   ├── api/          → FastAPI routers (pdf, questions, metrics) + middleware
#   ├── db/           → Database engine, sessions, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Parsing, chunking, embedding, retrieval, QA,
#   │                    heuristic + AI metric extraction and validation
#   └── workers/      → Celery processing pipeline
# =============================================================================

__version__ = "0.1.0"
