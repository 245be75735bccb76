from typing import Any, Dict

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    code: str = Field(..., description="EarthX error code, E001..E010")
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ErrorEnvelope(BaseModel):
    """Body of every non-2xx response rendered by the global exception handlers."""

    error: ErrorDetail
