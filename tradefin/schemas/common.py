"""
Shared error envelopes, declared on routes so the OpenAPI document shows
the failure payloads alongside the happy path.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error envelope returned by every domain-error handler."""

    error: bool = Field(default=True, description="Always ``true`` for errors")
    message: str = Field(
        ...,
        description="Human-readable error description",
        examples=["Invalid status transition: 'Submitted' → 'Funded'"],
    )
    details: Optional[Any] = Field(
        default=None,
        description="Structured context, e.g. requested vs remaining funding",
    )


class ValidationErrorDetail(BaseModel):
    """Single field-level validation failure."""

    field: str = Field(..., examples=["body -> amount"])
    message: str = Field(..., examples=["Input should be greater than 0"])


class ValidationErrorResponse(BaseModel):
    """Response body for 422 request-validation failures."""

    error: bool = Field(default=True)
    message: str = Field(default="Validation failed")
    details: List[ValidationErrorDetail]
