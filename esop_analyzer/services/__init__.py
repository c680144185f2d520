# =============================================================================
# Services Package
# =============================================================================
# Document pipeline:   parser → chunker → embedder
# Question answering:  retrieval → qa (llm with provider fallback)
# Metric extraction:   heuristics, metrics_extraction (page-wise JSON),
#                      validation (cross-checked), focused_metrics
# Request plumbing:    file_validation, rate_limiter, jobs
# =============================================================================
