from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, List, Any, Dict


class QueryStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class QueryRequest(BaseModel):
    queries: List[str]


class QueryResult(BaseModel):
    query: Optional[str] = None
    status: QueryStatus
    description: Optional[str] = None
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    duration: float = 0.0  # milliseconds


class BatchResponse(BaseModel):
    message: str
    data: Optional[List[QueryResult]] = None
    error: Optional[str] = None


def _is_blank(value: Any) -> bool:
    return value is None or value is False or value == "" or value == 0


class SuggestionRequest(BaseModel):
    systemInstructions: Optional[Any] = None
    query: Optional[str] = None
    error: Optional[str] = None

    def missing_parameters(self) -> List[str]:
        # Empty objects and lists count as given
        return [
            name for name in ("systemInstructions", "query", "error")
            if _is_blank(getattr(self, name))
        ]


class Suggestion(BaseModel):
    query: str
    reason: str


class AvailabilityStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    UNAVAILABLE = "UNAVAILABLE"


class AvailabilityResponse(BaseModel):
    status: AvailabilityStatus


class HealthResponse(BaseModel):
    status: str  # "healthy", "degraded", "unhealthy"
    uptime_seconds: float
    connection_count: int
