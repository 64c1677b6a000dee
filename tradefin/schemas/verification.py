"""
Schemas for the verification-oracle contract.

The oracle speaks camelCase JSON (``isValid``, ``riskScore`` …); the models
accept either spelling and serialise with the aliases when talking to it.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from tradefin.models.invoice import CreditRating


class _OracleModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OracleRequest(_OracleModel):
    """Payload sent to the verification oracle."""

    invoice_id: int
    commodity: str
    amount: int
    supplier_country: str
    buyer_country: str
    exporter_name: str
    buyer_name: str


class VerificationChecks(_OracleModel):
    """Per-check outcome reported by the oracle."""

    document_integrity: bool = True
    sanctions_check: str = "CLEAR"
    fraud_check: str = "PASSED"
    commodity_check: str = "APPROVED"
    entity_verification: str = "VERIFIED"


class OracleResponse(_OracleModel):
    """
    Verification result returned by the oracle (or posted to the callback).

    ``details`` may arrive as a list or as a single ``" | "``-joined string.
    """

    invoice_id: Optional[int] = None
    is_valid: bool
    risk_score: int = Field(..., ge=0, le=100)
    credit_rating: str = "PENDING"
    details: List[str] = Field(default_factory=list)
    verification_checks: VerificationChecks = Field(default_factory=VerificationChecks)

    @field_validator("details", mode="before")
    @classmethod
    def split_details(cls, v: Union[str, List[str], None]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [part.strip() for part in v.split("|") if part.strip()]
        return v


class VerificationResultResponse(BaseModel):
    """The committed assessment returned by ``GET /invoices/{id}/verification``."""

    invoice_id: int
    is_valid: bool
    risk_score: int
    credit_rating: CreditRating
    apr_basis_points: int
    oracle_risk_score: Optional[int] = None
    details: List[str]
    verification_checks: Dict[str, Any]
    used_fallback: bool
    verified_at: datetime

    model_config = ConfigDict(from_attributes=True)
