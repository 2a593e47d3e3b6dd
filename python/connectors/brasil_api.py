"""
Company registry connector backed by BrasilAPI's CNPJ endpoint.

Looks a company up by CNPJ and reports it as a registry confirmation
(REG), or as a watchlist hit (WL) when the registration is not active.
Partners listed in the QSA become associated entities.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from connectors.base import Capability, LookupResult, RegistryConnector, SourceQuery
from connectors.errors import RecordNotFound, SourceUnavailable
from connectors.http_client import HttpClient
from identifiers import IdentifierScheme
from screening_models import (
    AssociatedEntity,
    COMPANY_REGISTRY_SECTION,
    EntityKind,
    MatchCandidate,
    MatchTag,
    Provenance,
    ScreeningRequest,
    SourceDescriptor,
    SourceFamily,
)
from similarity import best_score

logger = logging.getLogger(__name__)

INACTIVE_MARKERS = ("baixada", "inapta", "suspensa")


def is_inactive(record: Dict[str, Any]) -> bool:
    """True when the registration status is anything but active."""
    status = str(record.get('descricao_situacao_cadastral') or record.get('situacao_cadastral') or "").strip()
    # Receita status code 2 is ATIVA
    active = status == "2" if status.isdigit() else status.upper() == "ATIVA"
    description = status.lower()
    return not active or any(marker in description for marker in INACTIVE_MARKERS)


def _address(record: Dict[str, Any]) -> Optional[str]:
    street = ", ".join(str(p) for p in (
        record.get('logradouro'), record.get('numero'), record.get('complemento')
    ) if p)
    city = "/".join(str(p) for p in (record.get('municipio'), record.get('uf')) if p)
    parts = [p for p in (street, record.get('bairro'), city) if p]
    if record.get('cep'):
        parts.append(f"CEP: {record['cep']}")
    return " - ".join(parts) or None


class BrasilApiCompanyConnector(RegistryConnector):
    """CNPJ lookups against https://brasilapi.com.br"""

    family = SourceFamily.COMPANY_REGISTRY
    capabilities = frozenset({Capability.NATIONAL_REGISTRY_LOOKUP})
    jurisdictions = frozenset({"BR"})
    entity_kinds = frozenset({EntityKind.ORGANIZATION})
    identifier_scheme = IdentifierScheme.CNPJ
    summary_section = COMPANY_REGISTRY_SECTION

    def __init__(self, descriptor: SourceDescriptor, http: HttpClient, base_url: str,
                 timeout: Optional[float] = None):
        super().__init__(descriptor)
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def lookup_by_identifier(self, identifier: str, kind: EntityKind) -> Optional[Dict[str, Any]]:
        cnpj = self.check_identifier(identifier, kind)
        try:
            record = self.http.get_json(
                f"{self.base_url}/cnpj/v1/{cnpj}", self.source_id, timeout=self.timeout
            )
        except RecordNotFound:
            logger.info("CNPJ %s not found in registry", cnpj[:8])
            return None
        if not isinstance(record, dict):
            raise SourceUnavailable(self.source_id, "unexpected response shape")
        return record

    def to_candidates(self, records: Sequence[Any], request: ScreeningRequest,
                      query: SourceQuery) -> List[MatchCandidate]:
        candidates = []
        for record in records:
            legal_name = record.get('razao_social') or ""
            trade_name = record.get('nome_fantasia') or None
            partners = record.get('qsa') or []
            status = record.get('descricao_situacao_cadastral') or record.get('situacao_cadastral')
            activity = record.get('cnae_fiscal_descricao')
            reason = f"Status: {status}." + (f" {activity}" if activity else "")
            remark = None
            if record.get('capital_social') is not None or record.get('porte'):
                remark = f"Capital Social: R$ {record.get('capital_social')}. Porte: {record.get('porte')}"

            candidates.append(MatchCandidate(
                matched_name=legal_name,
                matched_name_local=trade_name,
                match_rate=best_score(request.names, [legal_name, trade_name]),
                entity_kind=EntityKind.ORGANIZATION,
                tag=MatchTag.WATCHLIST if is_inactive(record) else MatchTag.REGISTRY,
                provenance=Provenance.from_descriptor(self.descriptor),
                record_key=str(record.get('cnpj') or query.value),
                aliases=tuple(p.get('nome_socio') for p in partners[:5] if p.get('nome_socio')),
                nationality="Brazil",
                id_number=str(record.get('cnpj') or query.value),
                role_description=record.get('natureza_juridica'),
                reason=reason,
                remark=remark,
                address=_address(record),
                start_date=record.get('data_inicio_atividade'),
                associated_entities=tuple(
                    AssociatedEntity(
                        name=p.get('nome_socio'),
                        registration_number=p.get('cnpj_cpf_do_socio') or None,
                        role=p.get('qualificacao_socio') or None,
                    )
                    for p in partners if p.get('nome_socio')
                ),
            ))
        return candidates

    def registry_data(self, result: LookupResult, request: ScreeningRequest) -> Optional[Dict[str, Any]]:
        if not result.records:
            return None
        record = result.records[0]
        return {
            'cnpj': record.get('cnpj'),
            'razao_social': record.get('razao_social'),
            'nome_fantasia': record.get('nome_fantasia') or None,
            'situacao': record.get('situacao_cadastral'),
            'descricao_situacao': record.get('descricao_situacao_cadastral'),
            'ativa': not is_inactive(record),
            'data_abertura': record.get('data_inicio_atividade'),
            'capital_social': record.get('capital_social'),
            'porte': record.get('porte'),
            'natureza_juridica': record.get('natureza_juridica'),
            'cnae': record.get('cnae_fiscal_descricao'),
            'endereco': _address(record),
            'socios': [
                {'nome': p.get('nome_socio'), 'qualificacao': p.get('qualificacao_socio')}
                for p in record.get('qsa') or [] if p.get('nome_socio')
            ],
        }
