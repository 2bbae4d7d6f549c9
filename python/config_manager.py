"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

from screening_models import (
    ListClass, MatchStrength, PepLevel, RiskLevel, SanctionsList, ScreeningFrequency
)

logger = logging.getLogger(__name__)


DEFAULT_LIST_CLASSES: Dict[str, str] = {
    'ofac': 'blocking',
    'un': 'blocking',
    'eu': 'blocking',
    'uk_hmt': 'blocking',
    'au_dfat': 'blocking',
    'ca_sema': 'blocking',
    'ch_seco': 'blocking',
    'interpol': 'advisory',
    'world_bank': 'advisory',
}

DEFAULT_RISK_TABLE: Dict[str, Dict[str, str]] = {
    'blocking': {
        'exact': 'CRITICAL',
        'strong': 'CRITICAL',
        'moderate': 'HIGH',
        'weak': 'MEDIUM',
    },
    'advisory': {
        'exact': 'HIGH',
        'strong': 'MEDIUM',
        'moderate': 'MEDIUM',
        'weak': 'LOW',
    },
}

DEFAULT_HIGH_KEYWORDS: List[str] = [
    'president', 'prime minister', 'minister', 'head of state', 'governor',
    'general', 'admiral', 'chief justice', 'supreme court', 'central bank governor',
]

DEFAULT_MEDIUM_KEYWORDS: List[str] = [
    'director', 'deputy', 'assistant', 'commissioner', 'colonel', 'ambassador',
    'secretary', 'mayor', 'judge',
]

DEFAULT_FREQUENCY_DAYS: Dict[str, int] = {
    'daily': 1,
    'weekly': 7,
    'monthly': 30,
    'quarterly': 90,
    'annual': 365,
}


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "screening_user"
    password: str = "screening_password"
    name: str = "screening_core"


@dataclass
class StrengthCutoffs:
    """Minimum score (percent) of each match strength tier"""
    exact: float = 100.0
    strong: float = 90.0
    moderate: float = 85.0


@dataclass
class MatchingConfig:
    """Name matching policy"""
    similarity_threshold: float = 0.85
    phonetic_boost: float = 0.10
    token_boost: float = 0.05
    token_match_threshold: float = 0.9
    token_overlap_ratio: float = 0.7
    phonetic_mode: str = "all"  # all, any
    strength_cutoffs: StrengthCutoffs = field(default_factory=StrengthCutoffs)
    candidate_slack: float = 15.0
    min_name_length: int = 3


@dataclass
class ListsConfig:
    """Watch list scope and escalation policy"""
    default_lists: List[str] = field(default_factory=lambda: ['ofac', 'un', 'eu', 'uk_hmt'])
    list_classes: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_LIST_CLASSES))
    risk_table: Dict[str, Dict[str, str]] = field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_RISK_TABLE.items()}
    )


@dataclass
class PepConfig:
    """PEP screening policy"""
    similarity_threshold: float = 0.85
    former_pep_months: int = 12
    high_keywords: List[str] = field(default_factory=lambda: list(DEFAULT_HIGH_KEYWORDS))
    medium_keywords: List[str] = field(default_factory=lambda: list(DEFAULT_MEDIUM_KEYWORDS))
    edd_threshold: str = "HIGH"
    multiple_connection_count: int = 3


@dataclass
class SchedulerConfig:
    """Periodic screening settings"""
    batch_size: int = 50
    max_batch_size: int = 1000
    max_retry_attempts: int = 3
    retry_delay_seconds: int = 300
    include_pep: bool = True
    frequency_days: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_FREQUENCY_DAYS))


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class AuditConfig:
    """Audit trail configuration"""
    log_dir: Optional[str] = "logs"
    level: str = "INFO"
    console: bool = False


@dataclass
class PerformanceConfig:
    """Performance configuration"""
    concurrent_screening: bool = False
    max_threads: int = 4


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
        self.lists: ListsConfig = ListsConfig()
        self.pep: PepConfig = PepConfig()
        self.scheduler: SchedulerConfig = SchedulerConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.audit: AuditConfig = AuditConfig()
        self.performance: PerformanceConfig = PerformanceConfig()
        self.database: DatabaseConfig = DatabaseConfig()

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

        self.load_dict(self._raw_config)

    def load_dict(self, raw: Dict[str, Any]) -> None:
        """Parse and validate an already-loaded configuration mapping"""
        if not isinstance(raw, dict):
            raise ConfigurationError("Configuration root must be a mapping")
        self._raw_config = raw
        self._parse_matching()
        self._parse_lists()
        self._parse_pep()
        self._parse_scheduler()
        self._parse_logging()
        self._parse_audit()
        self._parse_performance()
        self._parse_database()
        self._validate()

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name)
        )

    def _parse_matching(self) -> None:
        """Parse matching configuration"""
        cfg = self._raw_config.get('matching', {})

        cutoff_cfg = cfg.get('strength_cutoffs', {})
        cutoffs = StrengthCutoffs(
            exact=cutoff_cfg.get('exact', 100.0),
            strong=cutoff_cfg.get('strong', 90.0),
            moderate=cutoff_cfg.get('moderate', 85.0)
        )

        self.matching = MatchingConfig(
            similarity_threshold=cfg.get('similarity_threshold', 0.85),
            phonetic_boost=cfg.get('phonetic_boost', 0.10),
            token_boost=cfg.get('token_boost', 0.05),
            token_match_threshold=cfg.get('token_match_threshold', 0.9),
            token_overlap_ratio=cfg.get('token_overlap_ratio', 0.7),
            phonetic_mode=str(cfg.get('phonetic_mode', 'all')).lower(),
            strength_cutoffs=cutoffs,
            candidate_slack=cfg.get('candidate_slack', 15.0),
            min_name_length=cfg.get('min_name_length', 3)
        )

    def _parse_lists(self) -> None:
        """Parse list scope and escalation policy"""
        cfg = self._raw_config.get('lists', {})

        # Partial overrides merge onto the defaults
        list_classes = dict(DEFAULT_LIST_CLASSES)
        list_classes.update({str(k).lower(): str(v).lower() for k, v in cfg.get('list_classes', {}).items()})

        risk_table = {k: dict(v) for k, v in DEFAULT_RISK_TABLE.items()}
        for list_class, row in cfg.get('risk_table', {}).items():
            risk_table.setdefault(str(list_class).lower(), {}).update(
                {str(k).lower(): str(v).upper() for k, v in (row or {}).items()}
            )

        self.lists = ListsConfig(
            default_lists=[str(name).lower() for name in cfg.get('default_lists', self.lists.default_lists)],
            list_classes=list_classes,
            risk_table=risk_table
        )

    def _parse_pep(self) -> None:
        """Parse PEP screening configuration"""
        cfg = self._raw_config.get('pep', {})
        self.pep = PepConfig(
            similarity_threshold=cfg.get('similarity_threshold', 0.85),
            former_pep_months=cfg.get('former_pep_months', 12),
            high_keywords=[k.lower() for k in cfg.get('high_keywords', DEFAULT_HIGH_KEYWORDS)],
            medium_keywords=[k.lower() for k in cfg.get('medium_keywords', DEFAULT_MEDIUM_KEYWORDS)],
            edd_threshold=str(cfg.get('edd_threshold', 'HIGH')).upper(),
            multiple_connection_count=cfg.get('multiple_connection_count', 3)
        )

    def _parse_scheduler(self) -> None:
        """Parse scheduler configuration"""
        cfg = self._raw_config.get('scheduler', {})
        frequency_days = dict(DEFAULT_FREQUENCY_DAYS)
        frequency_days.update({str(k).lower(): v for k, v in cfg.get('frequency_days', {}).items()})
        self.scheduler = SchedulerConfig(
            batch_size=cfg.get('batch_size', 50),
            max_batch_size=cfg.get('max_batch_size', 1000),
            max_retry_attempts=cfg.get('max_retry_attempts', 3),
            retry_delay_seconds=cfg.get('retry_delay_seconds', 300),
            include_pep=cfg.get('include_pep', True),
            frequency_days=frequency_days
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_audit(self) -> None:
        """Parse audit configuration"""
        cfg = self._raw_config.get('audit', {})
        self.audit = AuditConfig(
            log_dir=cfg.get('log_dir', 'logs'),
            level=cfg.get('level', 'INFO'),
            console=cfg.get('console', False)
        )

    def _parse_performance(self) -> None:
        """Parse performance configuration"""
        cfg = self._raw_config.get('performance', {})
        self.performance = PerformanceConfig(
            concurrent_screening=cfg.get('concurrent_screening', False),
            max_threads=cfg.get('max_threads', 4)
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
                'similarity_threshold': self.matching.similarity_threshold,
                'phonetic_boost': self.matching.phonetic_boost,
                'token_boost': self.matching.token_boost,
                'token_match_threshold': self.matching.token_match_threshold,
                'token_overlap_ratio': self.matching.token_overlap_ratio,
                'phonetic_mode': self.matching.phonetic_mode,
                'strength_cutoffs': {
                    'exact': self.matching.strength_cutoffs.exact,
                    'strong': self.matching.strength_cutoffs.strong,
                    'moderate': self.matching.strength_cutoffs.moderate
                },
                'candidate_slack': self.matching.candidate_slack,
                'min_name_length': self.matching.min_name_length
            },
            'lists': {
                'default_lists': self.lists.default_lists,
                'list_classes': self.lists.list_classes,
                'risk_table': self.lists.risk_table
            },
            'pep': {
                'similarity_threshold': self.pep.similarity_threshold,
                'former_pep_months': self.pep.former_pep_months,
                'edd_threshold': self.pep.edd_threshold,
                'multiple_connection_count': self.pep.multiple_connection_count
            },
            'scheduler': {
                'batch_size': self.scheduler.batch_size,
                'max_batch_size': self.scheduler.max_batch_size,
                'max_retry_attempts': self.scheduler.max_retry_attempts,
                'retry_delay_seconds': self.scheduler.retry_delay_seconds,
                'include_pep': self.scheduler.include_pep,
                'frequency_days': self.scheduler.frequency_days
            },
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            }
        }

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: On the first invalid section
        """
        m = self.matching
        for name in ('similarity_threshold', 'phonetic_boost', 'token_boost',
                     'token_match_threshold', 'token_overlap_ratio'):
            value = getattr(m, name)
            if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"matching.{name} must be within [0, 1], got {value!r}")

        if m.phonetic_mode not in ('all', 'any'):
            raise ConfigurationError(f"matching.phonetic_mode must be 'all' or 'any', got {m.phonetic_mode!r}")

        c = m.strength_cutoffs
        if not (100.0 >= c.exact > c.strong > c.moderate > 0):
            raise ConfigurationError(
                "matching.strength_cutoffs must be strictly descending (exact > strong > moderate > 0)"
            )
        if c.moderate < m.similarity_threshold * 100:
            raise ConfigurationError(
                "matching.strength_cutoffs.moderate must not be below the similarity threshold"
            )

        if m.min_name_length < 1:
            raise ConfigurationError("matching.min_name_length must be positive")

        for list_name, list_class in self.lists.list_classes.items():
            try:
                SanctionsList(list_name)
                ListClass(list_class)
            except ValueError:
                raise ConfigurationError(f"Unknown list or list class: {list_name}={list_class}")

        for list_name in self.lists.default_lists:
            try:
                SanctionsList(list_name)
            except ValueError:
                raise ConfigurationError(f"Unknown default list: {list_name}")

        # Risk table must be total over class x strength
        for list_class in ListClass:
            row = self.lists.risk_table.get(list_class.value)
            if row is None:
                raise ConfigurationError(f"lists.risk_table is missing class '{list_class.value}'")
            for strength in MatchStrength:
                level = row.get(strength.value)
                if level is None:
                    raise ConfigurationError(
                        f"lists.risk_table[{list_class.value}] is missing strength '{strength.value}'"
                    )
                try:
                    RiskLevel(level)
                except ValueError:
                    raise ConfigurationError(f"Unknown risk level in lists.risk_table: {level}")

        p = self.pep
        if not 0.0 <= p.similarity_threshold <= 1.0:
            raise ConfigurationError("pep.similarity_threshold must be within [0, 1]")
        try:
            PepLevel(p.edd_threshold)
        except ValueError:
            raise ConfigurationError(f"Unknown pep.edd_threshold: {p.edd_threshold}")
        if p.former_pep_months < 0 or p.multiple_connection_count < 2:
            raise ConfigurationError("pep.former_pep_months must be >= 0 and multiple_connection_count >= 2")

        s = self.scheduler
        if s.batch_size < 1 or s.max_batch_size < s.batch_size:
            raise ConfigurationError("scheduler.batch_size must be within 1..max_batch_size")
        if not 1 <= s.max_retry_attempts <= 10:
            raise ConfigurationError("scheduler.max_retry_attempts must be within 1..10")
        if s.retry_delay_seconds < 0:
            raise ConfigurationError("scheduler.retry_delay_seconds must not be negative")
        for frequency in ScreeningFrequency:
            if frequency is ScreeningFrequency.IMMEDIATE:
                continue
            days = s.frequency_days.get(frequency.value)
            if not isinstance(days, int) or days < 1:
                raise ConfigurationError(f"scheduler.frequency_days.{frequency.value} must be a positive integer")

        if self.performance.max_threads < 1:
            raise ConfigurationError("performance.max_threads must be positive")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
