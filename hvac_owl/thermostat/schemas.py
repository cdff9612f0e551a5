from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


Compatibility = Literal["Compatible", "Not Compatible", "Uncertain"]
ParseMethod = Literal["json", "pattern", "fallback"]


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys for the web frontend."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CompatibilityInfo(CamelModel):
    """Structured verdict extracted from the model's summary."""

    thermostat_type: str = "Not specified"
    compatibility: Compatibility = "Uncertain"
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    recommendations: List[str] = Field(default_factory=list)
    parse_method: ParseMethod = "fallback"


class AnalysisDebug(CamelModel):
    timestamp: str
    model: str
    processing_time: int
    files_processed: int
    parse_method: Optional[ParseMethod] = None
    error: Optional[str] = None


class AnalysisResult(CamelModel):
    """One thermostat verdict plus the raw model text it came from."""

    thermostat_type: str
    compatibility: Compatibility
    confidence: float = Field(..., ge=0.0, le=1.0)
    recommendations: List[str] = Field(default_factory=list)
    analyses: List[str] = Field(default_factory=list)
    summary: str = ""
    debug: AnalysisDebug


class AnalyzeResponse(CamelModel):
    results: List[AnalysisResult]
    count: int
    total_processing_time: int


class ErrorResponse(BaseModel):
    error: str
    details: Optional[str] = None
    debug: Optional[AnalysisDebug] = None
