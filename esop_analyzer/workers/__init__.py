# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration and beat schedule
#   - tasks.py: document processing pipeline, automatic metric validation,
#     job cleanup
#
# Processing a report takes minutes (parsing, embeddings, dozens of LLM
# calls), so uploads return a job id immediately and the client polls.
# =============================================================================
