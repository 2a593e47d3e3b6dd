"""
Catalogue of lists and registries the engine can cite as provenance.

Aggregator results are attributed to the underlying list through
DATASET_MAPPINGS; datasets with no mapping keep the aggregator's own
descriptor.
"""

from typing import Dict, Iterable, Optional, Tuple

from screening_models import SourceAuthority, SourceDescriptor

_NATIONAL = SourceAuthority.NATIONAL_GOVERNMENT
_AGGREGATOR = SourceAuthority.INTERNATIONAL_AGGREGATOR

_CGU_ISSUER = "CGU - Controladoria-Geral da União"

SOURCES: Tuple[SourceDescriptor, ...] = (
    # Brazil
    SourceDescriptor(
        "br_receita_federal", "Receita Federal do Brasil - CNPJ", "Receita Federal do Brasil", "BR",
        "registry", "https://solucoes.receita.fazenda.gov.br/Servicos/cnpjreva/",
        "Cadastro Nacional de Pessoas Jurídicas - registro oficial de empresas brasileiras.", _NATIONAL),
    SourceDescriptor(
        "br_cpf", "Receita Federal - CPF", "Receita Federal do Brasil", "BR", "registry",
        "https://servicos.receita.fazenda.gov.br/Servicos/CPF/",
        "Cadastro de Pessoas Físicas - validação de CPF.", _NATIONAL),
    SourceDescriptor(
        "br_ceis", "CEIS - Cadastro de Empresas Inidôneas e Suspensas", _CGU_ISSUER, "BR", "sanctions",
        "https://portaldatransparencia.gov.br/sancoes/ceis",
        "Empresas impedidas de contratar com a Administração Pública.", _NATIONAL),
    SourceDescriptor(
        "br_cnep", "CNEP - Cadastro Nacional de Empresas Punidas", _CGU_ISSUER, "BR", "sanctions",
        "https://portaldatransparencia.gov.br/sancoes/cnep",
        "Empresas que sofreram sanções com base na Lei Anticorrupção.", _NATIONAL),
    SourceDescriptor(
        "br_cepim", "CEPIM - Cadastro de Entidades Privadas Sem Fins Lucrativos Impedidas", _CGU_ISSUER,
        "BR", "sanctions", "https://portaldatransparencia.gov.br/sancoes/cepim",
        "Entidades privadas sem fins lucrativos impedidas de celebrar convênios.", _NATIONAL),
    SourceDescriptor(
        "br_ceaf", "CEAF - Cadastro de Expulsões da Administração Federal", _CGU_ISSUER, "BR", "sanctions",
        "https://portaldatransparencia.gov.br/sancoes/ceaf",
        "Servidores expulsos da Administração Pública Federal.", _NATIONAL),
    # United States
    SourceDescriptor(
        "ofac_sdn", "OFAC Specially Designated Nationals (SDN) List",
        "U.S. Department of the Treasury - Office of Foreign Assets Control", "US", "sanctions",
        "https://sanctionssearch.ofac.treas.gov/",
        "Individuals and companies owned or controlled by, or acting for, targeted countries.", _NATIONAL),
    SourceDescriptor(
        "ofac_cons", "OFAC Consolidated Sanctions List", "U.S. Department of the Treasury - OFAC", "US",
        "sanctions", "https://sanctionssearch.ofac.treas.gov/",
        "Consolidated list of OFAC non-SDN sanctions programs.", _NATIONAL),
    SourceDescriptor(
        "bis_entity", "BIS Entity List", "U.S. Department of Commerce - Bureau of Industry and Security",
        "US", "sanctions", "https://www.bis.gov/entity-list",
        "Entities believed to act contrary to U.S. national security or foreign policy interests.", _NATIONAL),
    SourceDescriptor(
        "bis_denied", "BIS Denied Persons List", "U.S. Department of Commerce - Bureau of Industry and Security",
        "US", "sanctions", "https://www.bis.gov/dpl", "Persons denied export privileges by BIS.", _NATIONAL),
    # United Kingdom / EU / UN
    SourceDescriptor(
        "uk_hmt", "UK HMT Sanctions List", "UK - HM Treasury (OFSI)", "GB", "sanctions",
        "https://www.gov.uk/government/publications/financial-sanctions-consolidated-list-of-targets",
        "UK financial sanctions consolidated list.", _NATIONAL),
    SourceDescriptor(
        "eu_fsf", "EU Consolidated Financial Sanctions List", "European Commission - DG FISMA", "EU",
        "sanctions",
        "https://data.europa.eu/data/datasets/consolidated-list-of-persons-groups-and-entities-subject-to-eu-financial-sanctions",
        "Persons, groups and entities subject to EU financial sanctions.", _NATIONAL),
    SourceDescriptor(
        "un_sc", "UN Security Council Consolidated List", "United Nations Security Council", "UN",
        "sanctions", "https://main.un.org/securitycouncil/en/content/un-sc-consolidated-list",
        "Individuals and entities subject to UN Security Council sanctions measures.", _NATIONAL),
    # International bodies
    SourceDescriptor(
        "interpol", "INTERPOL Red Notices", "International Criminal Police Organization", "INT", "criminal",
        "https://www.interpol.int/How-we-work/Notices/Red-Notices",
        "Requests to locate and provisionally arrest individuals pending extradition."),
    SourceDescriptor(
        "worldbank", "World Bank Debarred Firms & Individuals", "The World Bank Group", "INT", "watchlist",
        "https://www.worldbank.org/en/projects-operations/procurement/debarred-firms",
        "Firms and individuals ineligible for World Bank-financed contracts."),
    SourceDescriptor(
        "pep_global", "Global PEP Database", "Aggregated Government Sources", "INT", "pep",
        "https://www.opensanctions.org/datasets/peps/",
        "Politically Exposed Persons from national government sources worldwide."),
    # Aggregator
    SourceDescriptor(
        "opensanctions", "OpenSanctions Consolidated Search", "OpenSanctions", "INT", "sanctions",
        "https://www.opensanctions.org/",
        "International aggregation of sanctions lists, PEP registers and watchlists.", _AGGREGATOR),
)

_BY_ID: Dict[str, SourceDescriptor] = {s.source_id: s for s in SOURCES}

# OpenSanctions dataset name fragment -> catalogue id, checked in order
DATASET_MAPPINGS: Tuple[Tuple[str, str], ...] = (
    ("us_ofac_sdn", "ofac_sdn"),
    ("us_ofac_cons", "ofac_cons"),
    ("us_bis_entity", "bis_entity"),
    ("us_bis_denied", "bis_denied"),
    ("gb_hmt_sanctions", "uk_hmt"),
    ("eu_fsf", "eu_fsf"),
    ("un_sc_sanctions", "un_sc"),
    ("interpol_red_notices", "interpol"),
    ("worldbank_debarred", "worldbank"),
    ("br_cgu_ceis", "br_ceis"),
    ("br_cgu_cnep", "br_cnep"),
    ("peps", "pep_global"),
)


def get_source(source_id: str) -> SourceDescriptor:
    """Look up a catalogue entry.

    Raises:
        KeyError: If the id is not catalogued
    """
    return _BY_ID[source_id]


def map_dataset(dataset: str) -> Optional[SourceDescriptor]:
    """Catalogue entry for an aggregator dataset name, None when unmapped."""
    for fragment, source_id in DATASET_MAPPINGS:
        if fragment in dataset:
            return _BY_ID[source_id]
    return None


def map_datasets(datasets: Iterable[str]) -> Optional[SourceDescriptor]:
    """First mapped catalogue entry among an entity's datasets."""
    for dataset in datasets or ():
        descriptor = map_dataset(dataset)
        if descriptor is not None:
            return descriptor
    return None
