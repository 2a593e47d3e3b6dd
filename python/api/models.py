"""
Pydantic request/response schemas for the Identity Screening API

Field-level checks here are coarse (types, lengths, formats); the domain
rules live in screening_models.validate_screening_request.
"""

import re
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator


class ScreeningRequest(BaseModel):
    """Request schema for screening a person or organization."""
    subject_name: str = Field(
        ...,
        max_length=500,
        description="Display name of the subject (minimum 2 characters)"
    )
    subject_name_local: Optional[str] = Field(
        default=None,
        max_length=500,
        description="Name in the local script, when different"
    )
    entity_kind: str = Field(
        default="individual",
        description="individual or organization ('entity' is accepted as organization)"
    )
    national_id: Optional[str] = Field(
        default=None,
        max_length=50,
        description="National ID (CPF for individuals in Brazil)"
    )
    date_of_birth: Optional[str] = Field(
        default=None,
        description="Date of birth in ISO 8601 format (YYYY, YYYY-MM, or YYYY-MM-DD)"
    )
    country: Optional[str] = Field(default=None, max_length=100)
    gender: Optional[str] = Field(default=None, max_length=20)
    organization_name: Optional[str] = Field(default=None, max_length=500)
    organization_registration: Optional[str] = Field(
        default=None,
        max_length=50,
        description="Company registration number (CNPJ in Brazil)"
    )
    screening_types: Optional[List[str]] = Field(
        default=None,
        description="Categories to screen: sanctions, pep, criminal, watchlist (default: all)"
    )
    jurisdictions: Optional[List[str]] = Field(
        default=None,
        description="ISO country codes, or ALL (default)"
    )
    match_rate_threshold: Optional[int] = Field(
        default=None,
        description="Minimum match rate 0-100 (default from configuration)"
    )

    @field_validator('date_of_birth')
    @classmethod
    def validate_dob_format(cls, v: Optional[str]) -> Optional[str]:
        """Validate DOB is in ISO 8601 format."""
        if v is None:
            return v
        if not re.match(r'^\d{4}(-\d{2}(-\d{2})?)?$', v):
            raise ValueError(
                "DOB must be in ISO 8601 format: YYYY, YYYY-MM, or YYYY-MM-DD"
            )
        return v


class AssociatedEntityResponse(BaseModel):
    name: str
    registration_number: Optional[str] = None
    role: Optional[str] = None


class MatchResponse(BaseModel):
    """One ranked match with its provenance."""
    rank: int = Field(..., ge=1, description="Position in the ranked list (1 = best)")
    matched_name: str
    matched_name_local: Optional[str] = None
    match_rate: int = Field(..., ge=0, le=100)
    entity_kind: str
    tag: str = Field(..., description="SAN, DEB, CRI, PEP, POI, WL or REG")
    aliases: List[str] = Field(default_factory=list)
    nationality: Optional[str] = None
    id_number: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    role_description: Optional[str] = None
    reason: Optional[str] = None
    remark: Optional[str] = None
    address: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    associated_entities: List[AssociatedEntityResponse] = Field(default_factory=list)
    source_id: str
    source_name: str
    source_issuer: Optional[str] = None
    source_url: Optional[str] = None
    source_jurisdiction: Optional[str] = None
    source_authority: Optional[str] = None


class ScreenedListResponse(BaseModel):
    """One attempted source; unavailable sources carry 0 matches and a note."""
    source_id: str
    name: str
    issuer: Optional[str] = None
    issuer_description: Optional[str] = None
    jurisdiction: Optional[str] = None
    type: Optional[str] = None
    url: Optional[str] = None
    matches_found: int = Field(default=0, ge=0)
    status: str = Field(..., description="ok, not_found, invalid_identifier or unavailable")
    note: Optional[str] = None
    from_cache: bool = False


class ScreeningSummary(BaseModel):
    subject_name: str
    entity_kind: str
    total_matches: int = Field(..., ge=0)
    total_screened_lists: int = Field(..., ge=0)
    risk_level: str = Field(..., description="low, medium, high or critical")
    status: str = Field(..., description="completed or partial")
    match_rate_threshold: int
    screening_types: List[str] = Field(default_factory=list)
    jurisdictions: List[str] = Field(default_factory=list)
    api_sources: List[str] = Field(default_factory=list, description="Sources that answered")
    cache_hit: bool = Field(default=False, description="True when any source answered from cache")
    brazil_company_data: Optional[Dict[str, Any]] = Field(
        default=None,
        description="CNPJ registry record, reported even when its name score is below the threshold"
    )
    cpf_validation: Optional[Dict[str, Any]] = Field(
        default=None,
        description="CPF check-digit validation result"
    )


class ScreeningResponse(BaseModel):
    """Response schema for a completed screening."""
    report_id: str = Field(..., description="Report identifier (UUID)")
    report_token: str = Field(..., description="Retrieval token, the only credential for this report")
    summary: ScreeningSummary
    matches: List[MatchResponse] = Field(default_factory=list)
    screened_lists: List[ScreenedListResponse] = Field(default_factory=list)
    elapsed_ms: int = Field(..., ge=0, description="Processing time in milliseconds")


class SubjectResponse(BaseModel):
    name: str
    name_local: Optional[str] = None
    entity_kind: str
    id_number: Optional[str] = None
    date_of_birth: Optional[str] = None
    country: Optional[str] = None
    gender: Optional[str] = None
    company_name: Optional[str] = None
    company_registration: Optional[str] = None


class HistoryEntryResponse(BaseModel):
    action: str = Field(..., description="created, viewed or exported")
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    created_at: Optional[str] = None


class ReportResponse(BaseModel):
    """Full stored report."""
    report_id: str
    report_token: str
    created_at: Optional[str] = None
    subject: SubjectResponse
    summary: ScreeningSummary
    matches: List[MatchResponse] = Field(default_factory=list)
    screened_lists: List[ScreenedListResponse] = Field(default_factory=list)
    history: List[HistoryEntryResponse] = Field(default_factory=list)
    elapsed_ms: Optional[int] = None
    algorithm_version: Optional[str] = None


class SourceInfo(BaseModel):
    source_id: str
    name: str
    family: str
    jurisdictions: List[str] = Field(default_factory=list, description="Empty for global sources")


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: str = Field(default="unknown", description="ok, unavailable or unknown")
    sources: List[SourceInfo] = Field(default_factory=list, description="Registered sources")
    cache_backend: Optional[str] = None
    algorithm_version: str = Field(..., description="Algorithm version")
    uptime_seconds: Optional[int] = Field(
        default=None,
        description="Server uptime in seconds"
    )
    error_message: Optional[str] = None


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
