# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Bodies accepted by the processing and batch-session endpoints. Invalid
# bodies are rejected by FastAPI with 422 before any row is written.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChunkingStrategyRequest(BaseModel):
    """Explicit chunking strategy; omit it to let file type and size decide."""

    type: Literal["page", "section", "sliding-window"] = Field(
        description="Chunk boundaries: one per page, per detected section, or fixed windows",
    )
    chunk_size: int | None = Field(
        default=None,
        ge=100,
        le=100_000,
        description="Window length in characters (sliding-window only)",
    )
    overlap: int | None = Field(
        default=None,
        ge=0,
        description="Characters shared by consecutive windows (sliding-window only)",
    )

    @model_validator(mode="after")
    def _overlap_below_size(self) -> "ChunkingStrategyRequest":
        if self.chunk_size is not None and self.overlap is not None and self.overlap >= self.chunk_size:
            raise ValueError("overlap must be smaller than chunk_size")
        return self


class ChunkingRequest(BaseModel):
    """
    Request body for POST /documents/{document_id}/chunking.

    Example:
        {
            "generate_embedding": true,
            "failure_tolerance": 0.1
        }
    """

    strategy: ChunkingStrategyRequest | None = Field(
        default=None,
        description="Override the automatic strategy selection",
    )
    generate_embedding: bool = Field(
        default=True,
        description="Embed each chunk's text after extraction",
    )
    failure_tolerance: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description=(
            "Fraction of chunks allowed to fail while the job still completes. "
            "Defaults to the server setting (0 = any failure fails the job)."
        ),
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [{"generate_embedding": True, "failure_tolerance": 0.1}]
        }
    )


class ReprocessRequest(BaseModel):
    """Request body for POST /cases/{case_id}/reprocess."""

    generate_embedding: bool = True


class BatchSessionRequest(BaseModel):
    """
    Request body for POST /batch-sessions.

    Either `document_ids` (processed in the given order) or `case_id` alone
    (every not-yet-completed document of the case) must be given.
    """

    case_id: str | None = Field(
        default=None,
        max_length=64,
        description="Case the session belongs to",
        examples=["CASE-2024-0117"],
    )
    document_ids: list[int] | None = Field(
        default=None,
        min_length=1,
        description="Documents to process, in order. Duplicates are ignored.",
    )
    batch_size: int | None = Field(
        default=None,
        ge=1,
        le=100,
        description="Documents per internal batch (checkpoint interval)",
    )
    extract_entities: bool = Field(
        default=False,
        description="Run entity extraction after text extraction; failures are recorded, not fatal",
    )
    auto_start: bool = Field(
        default=True,
        description="Start the session immediately after creating it",
    )

    @model_validator(mode="after")
    def _ids_or_case(self) -> "BatchSessionRequest":
        if self.document_ids is None and self.case_id is None:
            raise ValueError("Either document_ids or case_id is required")
        return self
