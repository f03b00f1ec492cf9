"""Domain models shared by the ingestion pipeline, storage adapters and service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from rag_docstore.exceptions import ChunkingError, UnsupportedFilterError

ChunkingStrategy = Literal["recursive", "character", "token", "markdown", "html", "json", "latex"]
DuplicateStrategy = Literal["semantic", "metadata", "hybrid"]
DecisionAction = Literal["skip", "update", "add"]

SUPPORTED_OPERATORS = ("eq", "ne", "in", "contains")

# Plain-dict filter operators accepted by :meth:`MetadataFilter.from_mapping`.
_MAPPING_OPERATORS = {
    "$eq": "eq",
    "$ne": "ne",
    "$in": "in",
    "$contains": "contains",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetadataFilter(BaseModel):
    """Declarative metadata predicate for vector-store queries.

    Attributes
    ----------
    field:
        The metadata key to filter on (e.g. ``"document_id"``, ``"author"``).
    operator:
        ``eq`` / ``ne`` compare the stored value, ``in`` matches when the
        stored value is one of ``value`` (a list), ``contains`` matches when
        the stored value is a list holding ``value``.
    value:
        The value (or list of values for ``in``) to compare against.
    """

    field: str
    operator: str = "eq"
    value: Any = None

    @field_validator("operator")
    @classmethod
    def _known_operator(cls, operator: str) -> str:
        if operator not in SUPPORTED_OPERATORS:
            raise UnsupportedFilterError(
                f"Unsupported filter operator: {operator!r}",
                details={"supported": list(SUPPORTED_OPERATORS)},
            )
        return operator

    @model_validator(mode="after")
    def _list_for_in(self) -> MetadataFilter:
        if self.operator == "in" and not isinstance(self.value, (list, tuple)):
            raise UnsupportedFilterError(
                f"Filter on {self.field!r} with operator 'in' needs a list value",
                details={"field": self.field},
            )
        return self

    # -- helpers for common filters ------------------------------------------

    @classmethod
    def equals(cls, field: str, value: Any) -> MetadataFilter:
        return cls(field=field, operator="eq", value=value)

    @classmethod
    def not_equals(cls, field: str, value: Any) -> MetadataFilter:
        return cls(field=field, operator="ne", value=value)

    @classmethod
    def one_of(cls, field: str, values: list[Any]) -> MetadataFilter:
        return cls(field=field, operator="in", value=values)

    @classmethod
    def contains(cls, field: str, value: Any) -> MetadataFilter:
        return cls(field=field, operator="contains", value=value)

    @classmethod
    def from_mapping(cls, mapping: dict[str, Any]) -> list[MetadataFilter]:
        """Convert ``{"field": value}`` / ``{"field": {"$eq": value}}`` filters.

        Nested boolean combinators (``$and``, ``$or``) and unknown operators
        are rejected rather than dropped.
        """
        filters: list[MetadataFilter] = []
        for field, condition in mapping.items():
            if field.startswith("$"):
                raise UnsupportedFilterError(
                    f"Unsupported filter combinator: {field!r}",
                    details={"filter": mapping},
                )
            if isinstance(condition, dict):
                if len(condition) != 1:
                    raise UnsupportedFilterError(
                        f"Filter on {field!r} must hold exactly one operator",
                        details={"filter": mapping},
                    )
                raw_op, value = next(iter(condition.items()))
                operator = _MAPPING_OPERATORS.get(raw_op)
                if operator is None:
                    raise UnsupportedFilterError(
                        f"Unsupported filter operator: {raw_op!r}",
                        details={"filter": mapping},
                    )
                filters.append(cls(field=field, operator=operator, value=value))
            else:
                filters.append(cls.equals(field, condition))
        return filters


def normalize_filters(filters: list[MetadataFilter] | dict[str, Any] | None) -> list[MetadataFilter] | None:
    """Accept either filter shape and return a list (``None`` when empty)."""
    if not filters:
        return None
    if isinstance(filters, dict):
        return MetadataFilter.from_mapping(filters)
    return list(filters)


class Document(BaseModel):
    """A logical document, materialised on demand from its stored chunks."""

    id: str
    content: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    chunk_count: int = 0


class Chunk(BaseModel):
    """A contiguous segment of a document, embedded and stored on its own.

    ``metadata`` carries the owning document's metadata plus
    ``chunk_index``, ``start_position`` and ``end_position``.
    """

    id: str
    document_id: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    embedding: list[float] | None = None

    @property
    def chunk_index(self) -> int:
        return self.metadata["chunk_index"]


class SearchResult(BaseModel):
    """A stored chunk returned by a similarity query."""

    id: str
    content: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    score: float = 0.0

    @property
    def document_id(self) -> str:
        return self.metadata.get("document_id") or self.id


class ChunkingOptions(BaseModel):
    strategy: ChunkingStrategy = "recursive"
    size: int = 512
    overlap: int = 50
    separator: str | None = None
    extract_metadata: bool = False

    @model_validator(mode="after")
    def _check_sizes(self) -> ChunkingOptions:
        if self.size <= 0:
            raise ChunkingError(f"Chunk size must be positive, got {self.size}", details={"size": self.size})
        if self.overlap < 0:
            raise ChunkingError(
                f"Chunk overlap must not be negative, got {self.overlap}", details={"overlap": self.overlap}
            )
        if self.overlap >= self.size:
            raise ChunkingError(
                f"chunk overlap ({self.overlap}) must be < chunk size ({self.size})",
                details={"size": self.size, "overlap": self.overlap},
            )
        return self

    def merged(self, overrides: ChunkingOptions | dict[str, Any] | None) -> ChunkingOptions:
        """Return a copy with *overrides* applied on top of these options."""
        if overrides is None:
            return self
        if isinstance(overrides, ChunkingOptions):
            overrides = overrides.model_dump(exclude_unset=True)
        overrides = {key: value for key, value in overrides.items() if value is not None}
        return ChunkingOptions(**{**self.model_dump(), **overrides})


class SearchOptions(BaseModel):
    top_k: int = Field(default=5, ge=1)
    filter: list[MetadataFilter] | None = None
    min_score: float | None = None
    include_metadata: bool = True

    @field_validator("filter", mode="before")
    @classmethod
    def _coerce_filter(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return MetadataFilter.from_mapping(value)
        return value or None


class IndexStats(BaseModel):
    name: str
    dimension: int
    metric: str = "cosine"
    count: int = 0


# ── duplicate detection ────────────────────────────────────────────────


class DuplicateCheckConfig(BaseModel):
    enabled: bool = False
    threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    strategy: DuplicateStrategy = "semantic"
    top_k: int = Field(default=10, ge=1)
    ai_decision_enabled: bool = True


class SimilarDocument(BaseModel):
    document_id: str
    content: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    score: float
    chunk_id: str | None = None


class AIDecision(BaseModel):
    """Resolution returned by the decision model for a near-duplicate."""

    action: DecisionAction
    reason: str = "No reason provided"
    target_document_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("target_document_id", "targetDocumentId"),
    )
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


class DuplicateCheckResult(BaseModel):
    is_duplicate: bool
    similar_documents: list[SimilarDocument] = Field(default_factory=list)
    decision: AIDecision | None = None
    threshold: float


class AddDocumentResult(BaseModel):
    document: Document
    duplicate_check: DuplicateCheckResult | None = None
    action: Literal["added", "updated", "skipped"]
    message: str = ""


class DocumentPage(BaseModel):
    documents: list[Document] = Field(default_factory=list)
    total: int = 0
    limit: int
    offset: int
