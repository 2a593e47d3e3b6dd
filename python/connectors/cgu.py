"""
Brazilian federal sanctions lists from the CGU Portal da Transparência.

One connector instance per list:

- CEIS: companies and persons barred from public contracts (DEB)
- CNEP: companies punished under the Anti-Corruption Law (SAN)
- CEPIM: non-profit entities barred from agreements, organizations only (DEB)
- CEAF: civil servants expelled from federal service, individuals only (SAN)

A valid CPF/CNPJ is looked up directly and hits score 100; without one the
list is searched by name and hits are scored locally. Every call needs the
`chave-api-dados` API key.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from connectors.base import Capability, QueryMode, RegistryConnector, SearchFilters, SourceQuery
from connectors.errors import RecordNotFound, SourceUnavailable
from connectors.http_client import HttpClient
from identifiers import IdentifierScheme, validate_identifier
from screening_models import (
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

_BOTH = frozenset(EntityKind)


@dataclass(frozen=True)
class CguList:
    """Endpoint and parameter names of one CGU list"""
    code: str
    path: str
    source_id: str
    tag: MatchTag
    entity_kinds: FrozenSet[EntityKind]
    id_param: str
    name_param: str


CGU_LISTS: Dict[str, CguList] = {
    "CEIS": CguList("CEIS", "ceis", "br_ceis", MatchTag.DEBARRED, _BOTH, "cpfCnpj", "nomeSancionado"),
    "CNEP": CguList("CNEP", "cnep", "br_cnep", MatchTag.SANCTIONED, _BOTH, "cpfCnpj", "nomeSancionado"),
    "CEPIM": CguList("CEPIM", "cepim", "br_cepim", MatchTag.DEBARRED,
                     frozenset({EntityKind.ORGANIZATION}), "cnpjEntidade", "nomeEntidade"),
    "CEAF": CguList("CEAF", "ceaf", "br_ceaf", MatchTag.SANCTIONED,
                    frozenset({EntityKind.INDIVIDUAL}), "cpf", "nome"),
}


def _get(item: Dict[str, Any], *path: str) -> Any:
    value: Any = item
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def _first(*values: Any) -> Optional[str]:
    for value in values:
        if value:
            return str(value)
    return None


def _legal_basis(item: Dict[str, Any]) -> Optional[str]:
    basis = item.get('fundamentacao')
    if isinstance(basis, list):
        texts = [b.get('descricao') for b in basis if isinstance(b, dict) and b.get('descricao')]
        if texts:
            return "; ".join(texts)
    elif isinstance(basis, dict):
        return _first(basis.get('descricaoFundamentacao'), basis.get('descricao'))
    return _first(item.get('fundamentacaoLegal'), item.get('motivoImpedimento'))


def parse_sanction(item: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Flatten the per-list CGU item shapes into one sanction record."""
    return {
        'id': _first(item.get('id')),
        'name': _first(
            item.get('nomeSancionado'), _get(item, 'sancionado', 'nome'), _get(item, 'pessoa', 'nome'),
            item.get('nomeRazaoSocial'), item.get('nomeEntidade'), item.get('razaoSocial'), item.get('nome'),
        ),
        'document': _first(
            item.get('cpfCnpjSancionado'), _get(item, 'sancionado', 'codigoFormatado'),
            _get(item, 'pessoa', 'cnpjFormatado'), _get(item, 'pessoa', 'cpfFormatado'),
            item.get('cnpjEntidade'), item.get('cpf'),
        ),
        'sanction_type': _first(
            _get(item, 'tipoSancao', 'descricaoResumida'), _get(item, 'tipoSancao', 'descricaoTipoSancao'),
            item.get('punicao') if isinstance(item.get('punicao'), str) else _get(item, 'punicao', 'descricao'),
        ),
        'start_date': _first(item.get('dataInicioSancao'), item.get('dataReferencia'), item.get('dataPublicacao')),
        'end_date': _first(item.get('dataFimSancao'), item.get('dataFinalSancao')),
        'authority': _first(
            _get(item, 'orgaoSancionador', 'nome'), _get(item, 'orgaoConcedente', 'nome'),
            _get(item, 'orgaoLotacao', 'nome'),
        ),
        'authority_state': _first(_get(item, 'orgaoSancionador', 'siglaUf'), item.get('ufOrgaoSancionador')),
        'legal_basis': _legal_basis(item),
    }


def _record_key(record: Dict[str, Any]) -> str:
    if record.get('document'):
        return f"{record['document']}:{record.get('start_date') or ''}"
    return (record.get('name') or "").upper()


class CguSanctionsConnector(RegistryConnector):
    """Queries one CGU list through the Portal da Transparência API"""

    family = SourceFamily.GOVERNMENT_SANCTIONS
    capabilities = frozenset({Capability.SANCTIONS_LIST_LOOKUP, Capability.NATIONAL_REGISTRY_LOOKUP})
    jurisdictions = frozenset({"BR"})
    searches_by_name = True

    def __init__(self, descriptor: SourceDescriptor, cgu_list: CguList, http: HttpClient,
                 base_url: str, api_key_env: Optional[str] = "CGU_API_KEY",
                 timeout: Optional[float] = None):
        super().__init__(descriptor)
        self.cgu_list = cgu_list
        self.entity_kinds = cgu_list.entity_kinds
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_key_env = api_key_env
        self.timeout = timeout

    def scheme_for(self, kind: EntityKind) -> Optional[IdentifierScheme]:
        return IdentifierScheme.CNPJ if kind == EntityKind.ORGANIZATION else IdentifierScheme.CPF

    def identifier_for(self, request: ScreeningRequest) -> Optional[str]:
        # an invalid identifier falls back to a name search
        if not request.identifier:
            return None
        check = validate_identifier(self.scheme_for(request.entity_kind), request.identifier)
        return check.value if check.valid else None

    def _query(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        api_key = os.environ.get(self.api_key_env) if self.api_key_env else None
        if not api_key:
            raise SourceUnavailable(self.source_id, f"API key not configured ({self.api_key_env})")

        try:
            data = self.http.get_json(
                f"{self.base_url}/{self.cgu_list.path}",
                self.source_id,
                params={**params, 'pagina': 1},
                headers={'chave-api-dados': api_key},
                timeout=self.timeout,
            )
        except RecordNotFound:
            return []
        if not isinstance(data, list):
            raise SourceUnavailable(self.source_id, "unexpected response shape")
        logger.debug("%s returned %d items", self.cgu_list.code, len(data))
        return [parse_sanction(item) for item in data if isinstance(item, dict)]

    def lookup_by_identifier(self, identifier: str, kind: EntityKind) -> List[Dict[str, Any]]:
        document = self.check_identifier(identifier, kind)
        return self._query({self.cgu_list.id_param: document})

    def search_by_name(self, name: str, filters: SearchFilters) -> List[Dict[str, Any]]:
        return self._query({self.cgu_list.name_param: name})

    def to_candidates(self, records: Sequence[Any], request: ScreeningRequest,
                      query: SourceQuery) -> List[MatchCandidate]:
        candidates = []
        for record in records:
            name = record.get('name') or ""
            if query.mode == QueryMode.IDENTIFIER:
                rate = 100
            else:
                rate = best_score(request.names, [name])

            remark = None
            if record.get('authority'):
                state = record.get('authority_state')
                remark = f"Órgão Sancionador: {record['authority']}" + (f" ({state})" if state else "")

            candidates.append(MatchCandidate(
                matched_name=name,
                match_rate=rate,
                entity_kind=request.entity_kind,
                tag=self.cgu_list.tag,
                provenance=Provenance.from_descriptor(self.descriptor),
                record_key=record.get('id') or _record_key(record),
                nationality="Brazil",
                id_number=record.get('document'),
                role_description=record.get('sanction_type'),
                reason=record.get('legal_basis'),
                remark=remark,
                start_date=record.get('start_date'),
                end_date=record.get('end_date'),
            ))
        return candidates
