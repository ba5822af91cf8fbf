"""
Pydantic v2 data model for API requests and responses.
Defines schemas for the request classification service endpoints.
"""

from datetime import datetime, timezone
from typing import Optional, List, Any, Dict
from enum import Enum
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator
)

from config.model_config import ATTACK_LABELS, CLEAN_LABEL


# =====================================================================
# Enums
# =====================================================================

class Severity(str, Enum):
    """Severity attached to an attack pattern."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class StorageMode(str, Enum):
    """Where pattern vectors are searched."""
    MEMORY = "memory"
    DATABASE = "database"


# =====================================================================
# Request Models
# =====================================================================

class ClassifyRequest(BaseModel):
    """Request model for classifying canonical request text."""
    text: str = Field(
        ...,
        min_length=1,
        description="Canonical request text (see /request-text)",
        examples=["METHOD:POST PATH:/login DEPTH:1 FLAG:SQL_KEYWORDS"]
    )
    k: Optional[int] = Field(
        default=None,
        ge=1,
        le=100,
        description="Number of neighbors to vote (defaults to configured k)"
    )


class HTTPRequestFields(BaseModel):
    """Structured fields of an HTTP request."""
    method: str = Field(
        ...,
        min_length=1,
        description="HTTP method",
        examples=["POST"]
    )
    path: str = Field(
        ...,
        description="Request path",
        examples=["/login"]
    )
    body: str = Field(
        default="",
        description="Request body"
    )
    user_agent: str = Field(
        default="",
        description="User-Agent header value"
    )
    params: Dict[str, Any] = Field(
        default_factory=dict,
        description="Request parameters"
    )
    headers: Dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="Selected request headers"
    )

    @field_validator('method')
    @classmethod
    def validate_method(cls, v: str) -> str:
        """Reject methods that are not HTTP tokens."""
        if not v.isalpha():
            raise ValueError('Method must contain letters only')
        return v


class ClassifyHTTPRequest(HTTPRequestFields):
    """Request model for classifying a structured HTTP request."""
    k: Optional[int] = Field(
        default=None,
        ge=1,
        le=100,
        description="Number of neighbors to vote"
    )


class PatternCreateRequest(BaseModel):
    """Request model for adding a custom attack pattern."""
    label: str = Field(
        ...,
        description="Attack label or 'clean'",
        examples=["sqli"]
    )
    severity: Optional[Severity] = Field(
        default=None,
        description="Pattern severity"
    )
    text: Optional[str] = Field(
        default=None,
        description="Canonical request text to embed"
    )
    embedding: Optional[List[float]] = Field(
        default=None,
        description="Precomputed embedding vector"
    )
    source: str = Field(
        default="custom",
        description="Provenance tag"
    )

    @field_validator('label')
    @classmethod
    def validate_label(cls, v: str) -> str:
        """Validate label is in the closed label set."""
        if v != CLEAN_LABEL and v not in ATTACK_LABELS:
            raise ValueError(f'Unknown label: {v}')
        return v

    @model_validator(mode='after')
    def validate_input(self) -> "PatternCreateRequest":
        """Exactly one of text or embedding is required."""
        if (self.text is None) == (self.embedding is None):
            raise ValueError('Provide exactly one of text or embedding')
        return self


class ThresholdUpdateRequest(BaseModel):
    """Request model for updating the attack confidence threshold."""
    threshold: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="New confidence threshold (0.0 to 1.0)",
        examples=[0.3, 0.5]
    )


# =====================================================================
# Response Models
# =====================================================================

class NeighborResult(BaseModel):
    """One nearest stored pattern."""
    label: str = Field(
        ...,
        description="Pattern label"
    )
    severity: Optional[str] = Field(
        default=None,
        description="Pattern severity"
    )
    distance: float = Field(
        ...,
        description="Cosine distance to the query"
    )


class ClassificationResponse(BaseModel):
    """Response model for classification results."""
    label: str = Field(
        ...,
        description="Winning label"
    )
    confidence: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="Blended distance and voting confidence"
    )
    is_attack: bool = Field(
        ...,
        description="Whether the label is an attack"
    )
    blocked: bool = Field(
        default=False,
        description="Whether the verdict reaches the configured threshold"
    )
    nearest_distance: Optional[float] = Field(
        default=None,
        description="Distance of the closest pattern"
    )
    neighbors: List[NeighborResult] = Field(
        default_factory=list,
        description="Nearest patterns in ascending distance"
    )
    votes: Dict[str, float] = Field(
        default_factory=dict,
        description="Accumulated vote weight per label"
    )
    latency_ms: float = Field(
        ...,
        description="Classification latency in milliseconds"
    )
    storage: StorageMode = Field(
        ...,
        description="Storage mode used"
    )
    request_text: Optional[str] = Field(
        default=None,
        description="Canonical text that was classified"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the classification was performed"
    )


class RequestTextResponse(BaseModel):
    """Canonical text for a structured request."""
    text: str = Field(
        ...,
        description="Canonical request text"
    )


class PatternCreateResponse(BaseModel):
    """Response for a custom pattern insert."""
    label: str = Field(
        ...,
        description="Stored label"
    )
    total_patterns: int = Field(
        ...,
        description="Patterns stored after the insert"
    )
    storage: StorageMode = Field(
        ...,
        description="Storage mode used"
    )


class PatternStats(BaseModel):
    """Stored patterns per label."""
    total: int = Field(
        default=0,
        description="Total number of stored patterns"
    )
    by_label: Dict[str, int] = Field(
        default_factory=dict,
        description="Pattern count per label"
    )
    storage: StorageMode = Field(
        ...,
        description="Storage mode used"
    )


class PatternInfo(BaseModel):
    """Stored pattern metadata (embedding omitted)."""
    id: int = Field(
        ...,
        description="Pattern ID (row id in database mode, 1-based position in memory mode)"
    )
    label: str
    severity: Optional[str] = None
    dim: int = Field(
        ...,
        description="Embedding dimension"
    )
    source: str = Field(
        ...,
        description="Provenance tag (bundled, custom, ...)"
    )
    sample_text: Optional[str] = None
    created_at: Optional[str] = None


class PatternListResponse(BaseModel):
    """Response for pattern list endpoint."""
    patterns: List[PatternInfo] = Field(
        ...,
        description="Matching patterns"
    )
    total: int = Field(
        ...,
        description="Number of patterns returned"
    )
    limit: int = Field(
        ...,
        description="Limit used"
    )
    offset: int = Field(
        ...,
        description="Offset used"
    )
    storage: StorageMode = Field(
        ...,
        description="Storage mode used"
    )


class ThresholdResponse(BaseModel):
    """Response for threshold update."""
    old_threshold: float = Field(
        ...,
        description="Previous threshold value"
    )
    new_threshold: float = Field(
        ...,
        description="New threshold value"
    )
    status: str = Field(
        ...,
        description="Status message"
    )


# =====================================================================
# Health & Status Models
# =====================================================================

class ModelStatus(BaseModel):
    """Status of the embedding model and pattern corpus."""
    model_config = ConfigDict(protected_namespaces=())

    loaded: bool = Field(
        ...,
        description="Whether model and patterns are loaded"
    )
    model_path: str = Field(
        ...,
        description="Model directory"
    )
    storage: StorageMode = Field(
        ...,
        description="Storage mode"
    )
    embedding_dim: Optional[int] = Field(
        default=None,
        description="Embedding dimension"
    )
    max_length: Optional[int] = Field(
        default=None,
        description="Tokenizer sequence length"
    )
    patterns: Optional[int] = Field(
        default=None,
        description="Number of stored patterns"
    )


class HealthStatus(BaseModel):
    """System health status response."""
    status: str = Field(
        ...,
        description="Overall system status"
    )
    enabled: bool = Field(
        ...,
        description="Whether classification is enabled"
    )
    model: ModelStatus = Field(
        ...,
        description="Model status"
    )
    uptime_seconds: float = Field(
        ...,
        description="Server uptime in seconds"
    )
    memory_usage_mb: float = Field(
        ...,
        description="Current memory usage"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When status was checked"
    )


class SettingsStatus(BaseModel):
    """Current settings status."""
    enabled: bool = Field(
        ...,
        description="Whether classification is enabled"
    )
    threshold: float = Field(
        ...,
        description="Current attack confidence threshold"
    )
    default_k: int = Field(
        ...,
        description="Default number of neighbors"
    )
    action: str = Field(
        ...,
        description="Action taken on attack"
    )
    storage: StorageMode = Field(
        ...,
        description="Storage mode"
    )
    protected_paths: List[str] = Field(
        ...,
        description="Paths screened by the middleware"
    )


# =====================================================================
# Error Models
# =====================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str = Field(
        ...,
        description="Error type"
    )
    message: str = Field(
        ...,
        description="Error message"
    )
    details: Optional[dict] = Field(
        default=None,
        description="Additional error details"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When error occurred"
    )
