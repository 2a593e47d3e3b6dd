"""
Screening domain types.

Value objects passed between the orchestrator, the connectors, the risk
classifier and the report assembler:

- ScreeningRequest: immutable input, validated by validate_screening_request
- MatchCandidate / Provenance: one hit from one source
- ScreenedSource: audit record of one attempted source
- ScreeningOutcome: what a finished screening hands back to the caller
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum as PyEnum, IntEnum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from text_utils import clean_document

ALL_JURISDICTIONS = "ALL"

# Summary sections filled from registry answers regardless of match threshold
COMPANY_REGISTRY_SECTION = "brazil_company_data"
ID_VALIDATION_SECTION = "cpf_validation"
REGISTRY_SECTIONS = (COMPANY_REGISTRY_SECTION, ID_VALIDATION_SECTION)


# ============================================
# ENUMS
# ============================================

class EntityKind(str, PyEnum):
    """Kind of subject being screened"""
    INDIVIDUAL = "individual"
    ORGANIZATION = "organization"

    @classmethod
    def parse(cls, value: Any) -> 'EntityKind':
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if text in ("entity", "company", "organisation"):
            return cls.ORGANIZATION
        return cls(text)


class ScreeningCategory(str, PyEnum):
    """Screening categories a caller can request"""
    SANCTIONS = "sanctions"
    PEP = "pep"
    CRIMINAL = "criminal"
    WATCHLIST = "watchlist"


class MatchTag(str, PyEnum):
    """Short classification tag carried by a candidate"""
    SANCTIONED = "SAN"
    DEBARRED = "DEB"
    CRIMINAL = "CRI"
    PEP = "PEP"
    PERSON_OF_INTEREST = "POI"
    WATCHLIST = "WL"
    REGISTRY = "REG"

    @property
    def category(self) -> Optional[ScreeningCategory]:
        """Category a tag falls under; registry confirmations have none."""
        return _TAG_CATEGORIES.get(self)


_TAG_CATEGORIES = {
    MatchTag.SANCTIONED: ScreeningCategory.SANCTIONS,
    MatchTag.DEBARRED: ScreeningCategory.SANCTIONS,
    MatchTag.CRIMINAL: ScreeningCategory.CRIMINAL,
    MatchTag.PEP: ScreeningCategory.PEP,
    MatchTag.PERSON_OF_INTEREST: ScreeningCategory.WATCHLIST,
    MatchTag.WATCHLIST: ScreeningCategory.WATCHLIST,
}


class SourceAuthority(IntEnum):
    """Tie-break precedence between sources (higher wins)"""
    DEFAULT = 0
    INTERNATIONAL_AGGREGATOR = 1
    NATIONAL_GOVERNMENT = 2


class SourceFamily(str, PyEnum):
    """Class of provider sharing a lookup contract; drives cache TTLs"""
    COMPANY_REGISTRY = "company_registry"
    PERSON_ID_VALIDATOR = "person_id_validator"
    GOVERNMENT_SANCTIONS = "government_sanctions"
    SANCTIONS_AGGREGATOR = "sanctions_aggregator"


class LookupStatus(str, PyEnum):
    """Outcome of querying one source"""
    OK = "ok"
    NOT_FOUND = "not_found"
    INVALID_IDENTIFIER = "invalid_identifier"
    UNAVAILABLE = "unavailable"


class RiskLevel(str, PyEnum):
    """Coarse ordinal risk derived from the match list"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================
# EXCEPTIONS
# ============================================

class InvalidRequest(ValueError):
    """Raised when a screening request is missing or malformed fields"""

    def __init__(self, message: str, field: str = "", code: str = "INVALID_REQUEST",
                 suggestion: str = ""):
        super().__init__(message)
        self.field = field
        self.code = code
        self.suggestion = suggestion


# ============================================
# VALUE OBJECTS
# ============================================

@dataclass(frozen=True)
class ScreeningRequest:
    """Immutable screening input. Build it through validate_screening_request."""
    subject_name: str
    entity_kind: EntityKind = EntityKind.INDIVIDUAL
    subject_name_local: Optional[str] = None
    national_id: Optional[str] = None
    date_of_birth: Optional[str] = None
    country: Optional[str] = None
    gender: Optional[str] = None
    organization_name: Optional[str] = None
    organization_registration: Optional[str] = None
    categories: FrozenSet[ScreeningCategory] = frozenset(ScreeningCategory)
    jurisdictions: FrozenSet[str] = frozenset({ALL_JURISDICTIONS})
    threshold: int = 70

    @property
    def screens_all_jurisdictions(self) -> bool:
        return ALL_JURISDICTIONS in self.jurisdictions

    @property
    def names(self) -> Tuple[str, ...]:
        """Display name first, then the localized name when present."""
        if self.subject_name_local:
            return (self.subject_name, self.subject_name_local)
        return (self.subject_name,)

    @property
    def identifier(self) -> Optional[str]:
        """Identifier that keys registry lookups for this entity kind."""
        if self.entity_kind == EntityKind.ORGANIZATION:
            return self.organization_registration or self.national_id
        return self.national_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'subject_name': self.subject_name,
            'subject_name_local': self.subject_name_local,
            'entity_kind': self.entity_kind.value,
            'national_id': self.national_id,
            'date_of_birth': self.date_of_birth,
            'country': self.country,
            'gender': self.gender,
            'organization_name': self.organization_name,
            'organization_registration': self.organization_registration,
            'categories': sorted(c.value for c in self.categories),
            'jurisdictions': sorted(self.jurisdictions),
            'threshold': self.threshold,
        }


@dataclass(frozen=True)
class SourceDescriptor:
    """Static description of a list or registry"""
    source_id: str
    name: str
    issuer: str
    jurisdiction: str
    list_type: str
    url: str = ""
    description: str = ""
    authority: SourceAuthority = SourceAuthority.DEFAULT


@dataclass(frozen=True)
class Provenance:
    """Where a candidate came from.

    `source_id` names the connector that produced the candidate; the other
    fields describe the underlying list, which differs from the connector
    for aggregator results.
    """
    source_id: str
    source_name: str
    issuer: str
    jurisdiction: str
    url: str = ""
    authority: SourceAuthority = SourceAuthority.DEFAULT

    @classmethod
    def from_descriptor(cls, descriptor: SourceDescriptor, source_id: Optional[str] = None,
                        authority: Optional[SourceAuthority] = None,
                        url: Optional[str] = None) -> 'Provenance':
        return cls(
            source_id=source_id or descriptor.source_id,
            source_name=descriptor.name,
            issuer=descriptor.issuer,
            jurisdiction=descriptor.jurisdiction,
            url=url or descriptor.url,
            authority=descriptor.authority if authority is None else authority,
        )


@dataclass(frozen=True)
class AssociatedEntity:
    name: str
    registration_number: Optional[str] = None
    role: Optional[str] = None


@dataclass(frozen=True)
class MatchCandidate:
    """One hit from one source"""
    matched_name: str
    match_rate: int
    entity_kind: EntityKind
    tag: MatchTag
    provenance: Provenance
    record_key: str = ""
    matched_name_local: Optional[str] = None
    aliases: Tuple[str, ...] = ()
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
    associated_entities: Tuple[AssociatedEntity, ...] = ()

    @property
    def dedup_key(self) -> Tuple[str, str]:
        """Same underlying source + identifier pair."""
        key = self.record_key or clean_document(self.id_number) or self.matched_name.upper()
        return (self.provenance.source_id, key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'matched_name': self.matched_name,
            'matched_name_local': self.matched_name_local,
            'match_rate': self.match_rate,
            'entity_kind': self.entity_kind.value,
            'tag': self.tag.value,
            'aliases': list(self.aliases),
            'nationality': self.nationality,
            'id_number': self.id_number,
            'date_of_birth': self.date_of_birth,
            'gender': self.gender,
            'role_description': self.role_description,
            'reason': self.reason,
            'remark': self.remark,
            'address': self.address,
            'start_date': self.start_date,
            'end_date': self.end_date,
            'associated_entities': [
                {'name': a.name, 'registration_number': a.registration_number, 'role': a.role}
                for a in self.associated_entities
            ],
            'source_id': self.provenance.source_id,
            'source_name': self.provenance.source_name,
            'source_issuer': self.provenance.issuer,
            'source_url': self.provenance.url,
            'source_jurisdiction': self.provenance.jurisdiction,
            'source_authority': self.provenance.authority.name.lower(),
        }


@dataclass(frozen=True)
class ScreenedSource:
    """Audit record of one attempted source"""
    descriptor: SourceDescriptor
    status: LookupStatus
    matches_found: int = 0
    note: Optional[str] = None
    from_cache: bool = False
    elapsed_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source_id': self.descriptor.source_id,
            'name': self.descriptor.name,
            'issuer': self.descriptor.issuer,
            'issuer_description': self.descriptor.description,
            'jurisdiction': self.descriptor.jurisdiction,
            'type': self.descriptor.list_type,
            'url': self.descriptor.url,
            'matches_found': self.matches_found,
            'status': self.status.value,
            'note': self.note,
            'from_cache': self.from_cache,
        }


@dataclass(frozen=True)
class RequestMetadata:
    """Caller metadata recorded with reports and history entries"""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class ScreeningOutcome:
    """Result of a persisted screening"""
    report_id: str
    report_token: str
    request: ScreeningRequest
    matches: List[MatchCandidate]
    screened_sources: List[ScreenedSource]
    risk_level: RiskLevel
    status: str
    elapsed_ms: int = 0
    sources_answered: List[str] = field(default_factory=list)
    registry_data: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def cache_hit(self) -> bool:
        return any(s.from_cache for s in self.screened_sources)

    def summary(self) -> Dict[str, Any]:
        data = {
            'subject_name': self.request.subject_name,
            'entity_kind': self.request.entity_kind.value,
            'total_matches': len(self.matches),
            'total_screened_lists': len(self.screened_sources),
            'risk_level': self.risk_level.value,
            'status': self.status,
            'match_rate_threshold': self.request.threshold,
            'screening_types': sorted(c.value for c in self.request.categories),
            'jurisdictions': sorted(self.request.jurisdictions),
            'api_sources': list(self.sources_answered),
            'cache_hit': self.cache_hit,
        }
        for section in REGISTRY_SECTIONS:
            data[section] = self.registry_data.get(section)
        return data


# ============================================
# VALIDATION
# ============================================

def _optional_text(value: Any, field_name: str, max_length: int) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_length:
        raise InvalidRequest(
            f"{field_name} exceeds maximum length of {max_length} characters",
            field=field_name,
            code="FIELD_TOO_LONG",
            suggestion=f"Provide at most {max_length} characters",
        )
    return text


def _parse_categories(values: Optional[Iterable[Any]]) -> FrozenSet[ScreeningCategory]:
    if not values:
        return frozenset(ScreeningCategory)
    parsed = set()
    for value in values:
        try:
            parsed.add(ScreeningCategory(str(value).strip().lower()))
        except ValueError:
            raise InvalidRequest(
                f"Unknown screening category: {value}",
                field="screening_types",
                code="INVALID_CATEGORY",
                suggestion="Use sanctions, pep, criminal or watchlist",
            )
    return frozenset(parsed)


def _parse_jurisdictions(values: Optional[Iterable[Any]]) -> FrozenSet[str]:
    codes = {str(v).strip().upper() for v in (values or []) if str(v).strip()}
    if not codes or ALL_JURISDICTIONS in codes:
        return frozenset({ALL_JURISDICTIONS})
    return frozenset(codes)


def validate_screening_request(
    subject_name: Any,
    entity_kind: Any = EntityKind.INDIVIDUAL,
    subject_name_local: Any = None,
    national_id: Any = None,
    date_of_birth: Any = None,
    country: Any = None,
    gender: Any = None,
    organization_name: Any = None,
    organization_registration: Any = None,
    categories: Optional[Iterable[Any]] = None,
    jurisdictions: Optional[Iterable[Any]] = None,
    threshold: Any = None,
    default_threshold: int = 70,
    name_min_length: int = 2,
    name_max_length: int = 200,
    document_max_length: int = 50,
    blocked_characters: str = "",
) -> ScreeningRequest:
    """Validate raw request fields and build a ScreeningRequest.

    Raises:
        InvalidRequest: On a missing/short/long name, blocked characters,
            an unknown entity kind or category, a malformed date of birth,
            or a threshold outside 0-100.
    """
    name = " ".join(str(subject_name).split()) if subject_name is not None else ""
    if len(name) < name_min_length:
        raise InvalidRequest(
            f"Subject name is required (minimum {name_min_length} characters)",
            field="subject_name",
            code="NAME_TOO_SHORT",
            suggestion="Provide the subject's full name",
        )
    if len(name) > name_max_length:
        raise InvalidRequest(
            f"Subject name exceeds maximum length of {name_max_length} characters",
            field="subject_name",
            code="NAME_TOO_LONG",
            suggestion=f"Provide at most {name_max_length} characters",
        )
    blocked = [c for c in blocked_characters if c in name]
    if blocked:
        raise InvalidRequest(
            "Subject name contains characters that are not allowed",
            field="subject_name",
            code="BLOCKED_CHARACTERS",
            suggestion="Remove characters such as " + "".join(blocked),
        )

    try:
        kind = EntityKind.parse(entity_kind or EntityKind.INDIVIDUAL)
    except ValueError:
        raise InvalidRequest(
            f"Unknown entity kind: {entity_kind}",
            field="entity_kind",
            code="INVALID_ENTITY_KIND",
            suggestion="Use individual or organization",
        )

    dob = _optional_text(date_of_birth, "date_of_birth", 10)
    if dob is not None:
        try:
            if len(dob) == 4:
                int(dob)
            elif len(dob) == 7:
                date.fromisoformat(dob + "-01")
            else:
                date.fromisoformat(dob)
        except ValueError:
            raise InvalidRequest(
                "Date of birth must be YYYY, YYYY-MM or YYYY-MM-DD",
                field="date_of_birth",
                code="INVALID_DATE",
                suggestion="Example: 1985-06-15",
            )

    if threshold is None:
        threshold = default_threshold
    try:
        threshold = int(threshold)
    except (TypeError, ValueError):
        raise InvalidRequest("Match rate threshold must be an integer", field="match_rate_threshold",
                             code="INVALID_THRESHOLD")
    if not 0 <= threshold <= 100:
        raise InvalidRequest(
            "Match rate threshold must be between 0 and 100",
            field="match_rate_threshold",
            code="INVALID_THRESHOLD",
            suggestion=f"Omit it to use the default of {default_threshold}",
        )

    return ScreeningRequest(
        subject_name=name,
        entity_kind=kind,
        subject_name_local=_optional_text(subject_name_local, "subject_name_local", name_max_length),
        national_id=_optional_text(national_id, "national_id", document_max_length),
        date_of_birth=dob,
        country=_optional_text(country, "country", 100),
        gender=_optional_text(gender, "gender", 20),
        organization_name=_optional_text(organization_name, "organization_name", name_max_length),
        organization_registration=_optional_text(
            organization_registration, "organization_registration", document_max_length
        ),
        categories=_parse_categories(categories),
        jurisdictions=_parse_jurisdictions(jurisdictions),
        threshold=threshold,
    )
