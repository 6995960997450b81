"""
Configuration loading and validation for the feedback loop.

Loads ``config/feedback_loop.yaml``, validates it against the JSON schema in
``config/schemas/feedback_loop.schema.json`` and exposes typed dataclasses
for the monitor, reweighting and logging settings. Invalid configuration
is always rejected synchronously with ConfigurationError.
"""

import json
import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema
import yaml

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config" / "feedback_loop.yaml"
DEFAULT_SCHEMA_PATH = PROJECT_ROOT / "config" / "schemas" / "feedback_loop.schema.json"

DEFAULT_HORIZON_THRESHOLDS = {
    "T+1": 0.3,   # Tighter threshold for short-term
    "T+7": 0.5,
    "T+30": 0.7,  # Looser threshold for long-term
}

DEFAULT_ENDOGENOUS_SOURCES = [
    "YFINANCE_API",
    "FINNHUB_API",
    "EXCHANGE_RATE_API",
    "FRED_API",
    "SEC_EDGAR",
]

DEFAULT_EXOGENOUS_SOURCES = [
    "GNEWS_API",
    "POLYMARKET_API",
    "SENTIMENT_API",
]


class ConfigurationError(Exception):
    """Raised when configuration values are invalid."""
    pass


@dataclass
class MonitorConfig:
    """Outcome monitor settings."""
    polling_interval_seconds: float = 60.0
    max_predictions: int = 1000
    distance_threshold: float = 0.5
    horizon_thresholds: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_HORIZON_THRESHOLDS)
    )

    def validate(self) -> "MonitorConfig":
        if self.polling_interval_seconds <= 0:
            raise ConfigurationError(
                f"polling_interval_seconds must be > 0, got {self.polling_interval_seconds}"
            )
        if self.max_predictions < 1:
            raise ConfigurationError(
                f"max_predictions must be >= 1, got {self.max_predictions}"
            )
        if self.distance_threshold <= 0:
            raise ConfigurationError(
                f"distance_threshold must be > 0, got {self.distance_threshold}"
            )
        for horizon, threshold in self.horizon_thresholds.items():
            if threshold <= 0:
                raise ConfigurationError(
                    f"horizon threshold for {horizon} must be > 0, got {threshold}"
                )
        return self

    def threshold_for(self, horizon: str) -> float:
        """Per-horizon threshold, falling back to distance_threshold."""
        return self.horizon_thresholds.get(horizon, self.distance_threshold)


@dataclass
class ReweightingConfig:
    """Reweighting engine settings."""
    learning_rate: float = 0.1
    min_weight: float = 0.01
    max_weight: float = 1.0
    decay_factor: float = 0.99
    history_window: int = 50
    error_history_cap: int = 100
    max_exogenous_weight: float = 0.15
    z_score_threshold: float = 1.5
    min_error_samples: int = 5
    attribution_noise: float = 0.1
    seed: Optional[int] = None
    auto_mutate: bool = True
    decay_interval_seconds: Optional[float] = None

    def validate(self) -> "ReweightingConfig":
        if not 0.0 <= self.max_exogenous_weight <= 1.0:
            raise ConfigurationError(
                f"max_exogenous_weight must be in [0, 1], got {self.max_exogenous_weight}"
            )
        if not 0.0 < self.learning_rate <= 1.0:
            raise ConfigurationError(
                f"learning_rate must be in (0, 1], got {self.learning_rate}"
            )
        if not 0.0 <= self.min_weight <= 1.0 or not 0.0 <= self.max_weight <= 1.0:
            raise ConfigurationError(
                f"min_weight/max_weight must be in [0, 1], got "
                f"{self.min_weight}/{self.max_weight}"
            )
        if self.min_weight > self.max_weight:
            raise ConfigurationError(
                f"min_weight ({self.min_weight}) > max_weight ({self.max_weight})"
            )
        if not 0.0 <= self.decay_factor <= 1.0:
            raise ConfigurationError(
                f"decay_factor must be in [0, 1], got {self.decay_factor}"
            )
        if self.history_window < 1 or self.error_history_cap < 1:
            raise ConfigurationError("history_window and error_history_cap must be >= 1")
        if self.z_score_threshold <= 0:
            raise ConfigurationError(
                f"z_score_threshold must be > 0, got {self.z_score_threshold}"
            )
        if self.min_error_samples < 0:
            raise ConfigurationError(
                f"min_error_samples must be >= 0, got {self.min_error_samples}"
            )
        if self.attribution_noise < 0:
            raise ConfigurationError(
                f"attribution_noise must be >= 0, got {self.attribution_noise}"
            )
        if self.decay_interval_seconds is not None and self.decay_interval_seconds <= 0:
            raise ConfigurationError(
                f"decay_interval_seconds must be > 0, got {self.decay_interval_seconds}"
            )
        return self

    def merged(self, **changes: Any) -> "ReweightingConfig":
        """Return a validated copy with ``changes`` applied."""
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ConfigurationError(f"Unknown reweighting settings: {sorted(unknown)}")
        return replace(self, **changes).validate()


LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


@dataclass
class LoggingConfig:
    """Logging settings for command-line entry points."""
    level: str = "WARNING"
    log_dir: Optional[str] = "logs"
    log_file: str = "feedback_loop.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def validate(self) -> "LoggingConfig":
        if self.level.upper() not in LOG_LEVELS:
            raise ConfigurationError(
                f"logging level must be one of {sorted(LOG_LEVELS)}, got {self.level}"
            )
        if not self.log_file:
            raise ConfigurationError("log_file must not be empty")
        return self

    @property
    def level_number(self) -> int:
        return LOG_LEVELS[self.level.upper()]


@dataclass
class FeedbackLoopConfig:
    """Complete configuration for a FeedbackLoop."""
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    reweighting: ReweightingConfig = field(default_factory=ReweightingConfig)
    endogenous_sources: List[str] = field(
        default_factory=lambda: list(DEFAULT_ENDOGENOUS_SOURCES)
    )
    exogenous_sources: List[str] = field(
        default_factory=lambda: list(DEFAULT_EXOGENOUS_SOURCES)
    )
    ledger_dir: Path = Path("audit/ledger")
    log: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> "FeedbackLoopConfig":
        self.monitor.validate()
        self.reweighting.validate()
        self.log.validate()
        overlap = set(self.endogenous_sources) & set(self.exogenous_sources)
        if overlap:
            raise ConfigurationError(
                f"Sources classified as both endogenous and exogenous: {sorted(overlap)}"
            )
        if not self.endogenous_sources:
            raise ConfigurationError("At least one endogenous source is required")
        return self


def load_schema(schema_path: Optional[Path] = DEFAULT_SCHEMA_PATH) -> Optional[Dict[str, Any]]:
    """Load a JSON schema, returning None if it is not available."""
    if schema_path is None or not schema_path.exists():
        return None
    with open(schema_path, 'r') as f:
        return json.load(f)


def validate_raw_config(
    raw: Dict[str, Any],
    schema_path: Optional[Path] = DEFAULT_SCHEMA_PATH
) -> None:
    """
    Validate a raw configuration mapping against the JSON schema.

    Args:
        raw: Parsed YAML document
        schema_path: Path to JSON schema (skipped if missing)

    Raises:
        ConfigurationError: If the document violates the schema
    """
    schema = load_schema(schema_path)
    if schema is None:
        return
    try:
        jsonschema.validate(raw, schema)
    except jsonschema.ValidationError as e:
        path = ".".join(str(p) for p in e.absolute_path)
        where = f" at '{path}'" if path else ""
        raise ConfigurationError(f"Schema validation failed{where}: {e.message}")


def config_from_dict(
    raw: Dict[str, Any],
    schema_path: Optional[Path] = DEFAULT_SCHEMA_PATH
) -> FeedbackLoopConfig:
    """
    Build a validated FeedbackLoopConfig from a raw mapping.

    Args:
        raw: Parsed configuration mapping
        schema_path: Path to JSON schema

    Returns:
        Validated FeedbackLoopConfig

    Raises:
        ConfigurationError: If any value is invalid
    """
    validate_raw_config(raw, schema_path)

    monitor_raw = dict(raw.get("monitor") or {})
    thresholds = dict(DEFAULT_HORIZON_THRESHOLDS)
    thresholds.update(monitor_raw.pop("horizon_thresholds", None) or {})

    sources = raw.get("sources") or {}
    audit = raw.get("audit") or {}

    try:
        monitor = MonitorConfig(horizon_thresholds=thresholds, **monitor_raw)
        reweighting = ReweightingConfig(**(raw.get("reweighting") or {}))
        log = LoggingConfig(**(raw.get("logging") or {}))
    except TypeError as e:
        raise ConfigurationError(f"Unknown configuration key: {e}")

    config = FeedbackLoopConfig(
        monitor=monitor,
        reweighting=reweighting,
        endogenous_sources=list(sources.get("endogenous", DEFAULT_ENDOGENOUS_SOURCES)),
        exogenous_sources=list(sources.get("exogenous", DEFAULT_EXOGENOUS_SOURCES)),
        ledger_dir=Path(audit.get("ledger_dir", "audit/ledger")),
        log=log,
    )
    return config.validate()


def load_config(
    config_path: Path = DEFAULT_CONFIG_PATH,
    schema_path: Optional[Path] = DEFAULT_SCHEMA_PATH
) -> FeedbackLoopConfig:
    """
    Load configuration from YAML, falling back to defaults if missing.

    Args:
        config_path: Path to feedback_loop.yaml
        schema_path: Path to JSON schema

    Returns:
        Validated FeedbackLoopConfig

    Raises:
        ConfigurationError: If the file is unparseable or invalid
    """
    if not config_path.exists():
        logger.info(f"No config at {config_path}, using defaults")
        return FeedbackLoopConfig().validate()

    try:
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse {config_path}: {e}")

    if not isinstance(raw, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping")

    return config_from_dict(raw, schema_path)
