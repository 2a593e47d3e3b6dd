"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)

KNOWN_TAGS = ("SAN", "DEB", "CRI", "PEP", "POI", "WL", "REG")
CACHE_BACKENDS = ("memory", "database")


@dataclass
class MatchingConfig:
    """Matching configuration parameters"""
    default_threshold: int = 70
    top_n: int = 10


@dataclass
class RiskConfig:
    """Risk classification thresholds (compliance-tunable)"""
    critical: int = 95
    high: int = 90
    medium: int = 80
    adverse_tags: List[str] = field(default_factory=lambda: ["SAN", "DEB", "CRI", "WL"])


@dataclass
class CacheConfig:
    """Lookup cache configuration, TTLs are per source family"""
    backend: str = "memory"
    ttl_hours: Dict[str, float] = field(default_factory=lambda: {
        'company_registry': 168,
        'person_id_validator': 720,
        'government_sanctions': 24,
        'sanctions_aggregator': 12,
    })
    negative_ttl_hours: float = 6

    def ttl_seconds(self, family: str, negative: bool = False) -> float:
        """Resolve the TTL for a source family in seconds.

        Negative entries never outlive the family TTL.
        """
        hours = self.ttl_hours.get(family, min(self.ttl_hours.values(), default=1))
        if negative:
            hours = min(hours, self.negative_ttl_hours)
        return hours * 3600


@dataclass
class ConnectorConfig:
    """Settings for a single registry connector"""
    enabled: bool = True
    base_url: str = ""
    timeout_seconds: Optional[float] = None
    api_key_env: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)


def _default_connectors() -> Dict[str, ConnectorConfig]:
    return {
        'brasil_api': ConnectorConfig(base_url="https://brasilapi.com.br/api"),
        'cpf_validator': ConnectorConfig(),
        'cgu': ConnectorConfig(
            base_url="https://api.portaldatransparencia.gov.br/api-de-dados",
            api_key_env="CGU_API_KEY",
            options={'lists': ["CEIS", "CNEP", "CEPIM", "CEAF"]},
        ),
        'opensanctions': ConnectorConfig(
            base_url="https://api.opensanctions.org",
            api_key_env="OPENSANCTIONS_API_KEY",
            options={'dataset': "default", 'limit': 20},
        ),
    }


@dataclass
class ConnectorsConfig:
    """Outbound source configuration"""
    timeout_seconds: float = 10
    user_agent: str = "IdentityScreening/1.0"
    sources: Dict[str, ConnectorConfig] = field(default_factory=_default_connectors)

    def get(self, name: str) -> ConnectorConfig:
        return self.sources.get(name, ConnectorConfig(enabled=False))

    def timeout_for(self, name: str) -> float:
        own = self.get(name).timeout_seconds
        return own if own else self.timeout_seconds


@dataclass
class InputValidationConfig:
    """Input validation configuration for user-provided data"""
    name_min_length: int = 2
    name_max_length: int = 200
    document_max_length: int = 50
    blocked_characters: str = "<>{}[]|\\;`$"


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = "logs/screening.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class PerformanceConfig:
    """Performance configuration"""
    max_threads: int = 8
    source_wait_seconds: float = 30


@dataclass
class AlgorithmConfig:
    """Algorithm version information"""
    version: str = "1.0.0"
    name: str = "Jaro-Winkler Multi-Source Screener"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.matching: MatchingConfig = MatchingConfig()
        self.risk: RiskConfig = RiskConfig()
        self.cache: CacheConfig = CacheConfig()
        self.connectors: ConnectorsConfig = ConnectorsConfig()
        self.input_validation: InputValidationConfig = InputValidationConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.performance: PerformanceConfig = PerformanceConfig()
        self.algorithm: AlgorithmConfig = AlgorithmConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config root must be a mapping")

        self._parse_matching()
        self._parse_risk()
        self._parse_cache()
        self._parse_connectors()
        self._parse_input_validation()
        self._parse_logging()
        self._parse_performance()
        self._parse_algorithm()
        self._validate()

    def _parse_matching(self) -> None:
        """Parse matching configuration"""
        cfg = self._raw_config.get('matching', {})
        self.matching = MatchingConfig(
            default_threshold=cfg.get('default_threshold', 70),
            top_n=cfg.get('top_n', 10)
        )

    def _parse_risk(self) -> None:
        """Parse risk thresholds"""
        cfg = self._raw_config.get('risk', {})
        self.risk = RiskConfig(
            critical=cfg.get('critical', 95),
            high=cfg.get('high', 90),
            medium=cfg.get('medium', 80),
            adverse_tags=[str(t).upper() for t in cfg.get('adverse_tags', self.risk.adverse_tags)]
        )

    def _parse_cache(self) -> None:
        """Parse cache configuration"""
        cfg = self._raw_config.get('cache', {})
        ttl_hours = dict(self.cache.ttl_hours)
        ttl_hours.update(cfg.get('ttl_hours', {}) or {})
        self.cache = CacheConfig(
            backend=cfg.get('backend', 'memory'),
            ttl_hours=ttl_hours,
            negative_ttl_hours=cfg.get('negative_ttl_hours', 6)
        )

    def _parse_connectors(self) -> None:
        """Parse connector configuration, merging over the built-in defaults"""
        cfg = self._raw_config.get('connectors', {})
        sources = _default_connectors()

        for name, source_cfg in (cfg.get('sources', {}) or {}).items():
            source_cfg = source_cfg or {}
            base = sources.get(name, ConnectorConfig())
            options = dict(base.options)
            options.update({
                k: v for k, v in source_cfg.items()
                if k not in ('enabled', 'base_url', 'timeout_seconds', 'api_key_env')
            })
            sources[name] = ConnectorConfig(
                enabled=source_cfg.get('enabled', base.enabled),
                base_url=source_cfg.get('base_url', base.base_url),
                timeout_seconds=source_cfg.get('timeout_seconds', base.timeout_seconds),
                api_key_env=source_cfg.get('api_key_env', base.api_key_env),
                options=options
            )

        self.connectors = ConnectorsConfig(
            timeout_seconds=cfg.get('timeout_seconds', 10),
            user_agent=cfg.get('user_agent', self.connectors.user_agent),
            sources=sources
        )

    def _parse_input_validation(self) -> None:
        """Parse input validation configuration"""
        cfg = self._raw_config.get('input_validation', {})
        self.input_validation = InputValidationConfig(
            name_min_length=cfg.get('name_min_length', 2),
            name_max_length=cfg.get('name_max_length', 200),
            document_max_length=cfg.get('document_max_length', 50),
            blocked_characters=cfg.get('blocked_characters', "<>{}[]|\\;`$")
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', 'logs/screening.log'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_performance(self) -> None:
        """Parse performance configuration"""
        cfg = self._raw_config.get('performance', {})
        self.performance = PerformanceConfig(
            max_threads=cfg.get('max_threads', 8),
            source_wait_seconds=cfg.get('source_wait_seconds', 30)
        )

    def _parse_algorithm(self) -> None:
        """Parse algorithm configuration"""
        cfg = self._raw_config.get('algorithm', {})
        self.algorithm = AlgorithmConfig(
            version=cfg.get('version', '1.0.0'),
            name=cfg.get('name', 'Jaro-Winkler Multi-Source Screener')
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return {
            'matching': {
                'default_threshold': self.matching.default_threshold,
                'top_n': self.matching.top_n
            },
            'risk': {
                'critical': self.risk.critical,
                'high': self.risk.high,
                'medium': self.risk.medium,
                'adverse_tags': list(self.risk.adverse_tags)
            },
            'cache': {
                'backend': self.cache.backend,
                'ttl_hours': dict(self.cache.ttl_hours),
                'negative_ttl_hours': self.cache.negative_ttl_hours
            },
            'connectors': {
                'timeout_seconds': self.connectors.timeout_seconds,
                'user_agent': self.connectors.user_agent,
                'sources': {
                    name: {
                        'enabled': source.enabled,
                        'base_url': source.base_url,
                        'timeout_seconds': source.timeout_seconds,
                        'api_key_env': source.api_key_env,
                        **source.options
                    }
                    for name, source in self.connectors.sources.items()
                }
            },
            'performance': {
                'max_threads': self.performance.max_threads,
                'source_wait_seconds': self.performance.source_wait_seconds
            },
            'algorithm': {
                'version': self.algorithm.version,
                'name': self.algorithm.name
            }
        }

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: If any value is out of range
        """
        if not 0 <= self.matching.default_threshold <= 100:
            raise ConfigurationError(
                f"matching.default_threshold must be 0-100, got {self.matching.default_threshold}"
            )
        if self.matching.top_n < 1:
            raise ConfigurationError(f"matching.top_n must be >= 1, got {self.matching.top_n}")

        for name in ('critical', 'high', 'medium'):
            value = getattr(self.risk, name)
            if not 0 <= value <= 100:
                raise ConfigurationError(f"risk.{name} must be 0-100, got {value}")
        if not (self.risk.critical >= self.risk.high >= self.risk.medium):
            raise ConfigurationError(
                "risk thresholds must satisfy critical >= high >= medium "
                f"(got {self.risk.critical}/{self.risk.high}/{self.risk.medium})"
            )
        unknown = [t for t in self.risk.adverse_tags if t not in KNOWN_TAGS]
        if unknown:
            raise ConfigurationError(f"Unknown adverse tags: {unknown}")

        if self.cache.backend not in CACHE_BACKENDS:
            raise ConfigurationError(
                f"cache.backend must be one of {CACHE_BACKENDS}, got {self.cache.backend!r}"
            )
        for family, hours in self.cache.ttl_hours.items():
            if hours is None or hours <= 0:
                raise ConfigurationError(f"cache.ttl_hours.{family} must be positive")
        if self.cache.negative_ttl_hours <= 0:
            raise ConfigurationError("cache.negative_ttl_hours must be positive")

        if self.connectors.timeout_seconds <= 0:
            raise ConfigurationError("connectors.timeout_seconds must be positive")
        if self.performance.max_threads < 1:
            raise ConfigurationError("performance.max_threads must be >= 1")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
