"""
Person identifier validator.

Validates CPF format and check digits locally; there is no network call.
A valid CPF is reported as a registry confirmation at full match rate.
"""

from typing import Any, Dict, List, Optional, Sequence

from connectors.base import Capability, LookupResult, RegistryConnector, SourceQuery
from identifiers import IdentifierScheme
from screening_models import (
    ID_VALIDATION_SECTION,
    EntityKind,
    LookupStatus,
    MatchCandidate,
    MatchTag,
    Provenance,
    ScreeningRequest,
    SourceFamily,
)


class CpfValidatorConnector(RegistryConnector):
    family = SourceFamily.PERSON_ID_VALIDATOR
    capabilities = frozenset({Capability.IDENTIFIER_VALIDATOR})
    jurisdictions = frozenset({"BR"})
    entity_kinds = frozenset({EntityKind.INDIVIDUAL})
    identifier_scheme = IdentifierScheme.CPF
    summary_section = ID_VALIDATION_SECTION

    def lookup_by_identifier(self, identifier: str, kind: EntityKind) -> Optional[Dict[str, Any]]:
        cpf = self.check_identifier(identifier, kind)
        return {'cpf': cpf, 'valid': True, 'situacao_cadastral': "Regular"}

    def to_candidates(self, records: Sequence[Any], request: ScreeningRequest,
                      query: SourceQuery) -> List[MatchCandidate]:
        return [
            MatchCandidate(
                matched_name=request.subject_name,
                match_rate=100,
                entity_kind=EntityKind.INDIVIDUAL,
                tag=MatchTag.REGISTRY,
                provenance=Provenance.from_descriptor(self.descriptor),
                record_key=record['cpf'],
                nationality="Brazil",
                id_number=record['cpf'],
                reason=f"Situação Cadastral: {record.get('situacao_cadastral')}",
            )
            for record in records
        ]

    def registry_data(self, result: LookupResult, request: ScreeningRequest) -> Optional[Dict[str, Any]]:
        if result.status == LookupStatus.OK and result.records:
            return {'valid': True, 'situacao': result.records[0].get('situacao_cadastral')}
        if result.status == LookupStatus.INVALID_IDENTIFIER:
            return {'valid': False, 'situacao': "Inválido", 'reason': result.note}
        return None
