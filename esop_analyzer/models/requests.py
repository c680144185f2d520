# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Request bodies are validated by FastAPI before the handler runs; invalid
# bodies get an automatic 422 with per-field errors.
#
# Field names are snake_case in Python and camelCase on the wire
# (`document_id` ↔ `documentId`). Both spellings are accepted on input.
# =============================================================================

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AskRequest(CamelModel):
    """
    Request body for POST /api/questions/ask.

    Example:
        {
            "question": "What is the fair market value per share?",
            "documentId": 1
        }
    """

    question: str = Field(
        ...,
        min_length=3,
        max_length=1000,
        description="Question about the valuation report",
        examples=["What discount rate was used in the valuation?"],
    )
    document_id: int = Field(
        ...,
        description="ID of the document to answer from",
        examples=[1],
    )


class ValidateMetricsRequest(CamelModel):
    """
    Request body for POST /api/metrics/validate/{document_id}.

    `metrics` holds the values shown to the user, keyed by
    enterpriseValue, valueOfEquity, valuationPerShare, revenue, ebitda,
    discountRate. Keys that are missing or null are not validated.
    """

    metrics: dict[str, float | str | None] = Field(
        ...,
        description="Current metric values to check against the document",
        examples=[{"enterpriseValue": 50_000_000, "discountRate": 12.5}],
    )
