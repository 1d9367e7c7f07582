"""Pipeline configuration from YAML file.

Loads from config/config.yaml with all settings in one place:
- Broker connection and topic
- Producer and consumer tuning
- Schema registry endpoint
- Security protocol and reconnect policy

Environment variables ARE supported using ${VAR_NAME} and ${VAR_NAME:-default}
syntax in YAML files. KAFKA_BOOTSTRAP_SERVERS and SCHEMA_REGISTRY_URL, when set,
override the file.
"""

import json
import logging
import os
import re
import sys
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.errors.exceptions import ConfigurationError
from core.resilience.retry import RECONNECT_RETRY, RetryConfig

logger = logging.getLogger(__name__)


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return dict."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} environment variables in config data."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        pattern = r"\$\{([^}:]+)(?::-(([^}]*))?)?\}"

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else match.group(0)
            return os.getenv(var_name, default_value)

        return re.sub(pattern, replacer, data)
    else:
        return data


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _as_bool(value: Any) -> bool:
    # bool("false") is True, so strings from env expansion need parsing
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _build_section(cls, data: Optional[Dict[str, Any]], section: str):
    """Build a section dataclass, rejecting unknown keys and coercing scalar types."""
    data = data or {}
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in '{section}' section: {', '.join(unknown)}",
            context={"section": section, "keys": unknown},
        )

    kwargs = {}
    for name, value in data.items():
        default = getattr(cls, name, None)
        if value is None:
            kwargs[name] = value
        elif isinstance(default, bool):
            kwargs[name] = _as_bool(value)
        elif isinstance(default, int) and not isinstance(value, bool):
            try:
                kwargs[name] = int(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"{section}.{name} must be an integer, got {value!r}", cause=e) from e
        elif isinstance(default, float):
            try:
                kwargs[name] = float(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"{section}.{name} must be a number, got {value!r}", cause=e) from e
        else:
            kwargs[name] = value
    return cls(**kwargs)


# Default config file: config/config.yaml in src/ directory
DEFAULT_CONFIG_FILE = Path(__file__).parent / "config.yaml"

VALID_SECURITY_PROTOCOLS = ("PLAINTEXT", "SSL", "SASL_PLAINTEXT", "SASL_SSL")
VALID_SASL_MECHANISMS = ("PLAIN", "GSSAPI", "SCRAM-SHA-256", "SCRAM-SHA-512")
VALID_OFFSET_RESETS = ("earliest", "latest", "none")
VALID_COMPRESSION = (None, "gzip", "snappy", "lz4", "zstd")
VALID_SUBJECT_STRATEGIES = ("topic", "record")


@dataclass
class KafkaSection:
    """Broker connection shared by producer and consumer."""

    bootstrap_servers: str = ""
    topic: str = "users"
    group_id: str = "avropipe-consumer"
    client_id: str = "avropipe"
    request_timeout_ms: int = 30000
    metadata_max_age_ms: int = 300000  # 5 minutes
    connections_max_idle_ms: int = 540000  # 9 minutes


@dataclass
class ProducerSection:
    acks: Any = "all"
    enable_idempotence: bool = True
    linger_ms: int = 5
    max_batch_size: int = 16384
    compression_type: Optional[str] = None
    backpressure_timeout_s: float = 10.0
    shutdown_grace_s: float = 5.0
    # Pacing of the demo producer loop, one record per interval
    interval_seconds: float = 1.0


@dataclass
class ConsumerSection:
    auto_offset_reset: str = "earliest"
    max_poll_records: int = 100
    poll_timeout_s: float = 0.1
    session_timeout_ms: int = 45000
    heartbeat_interval_ms: int = 3000
    max_poll_interval_ms: int = 300000
    allow_missing_topics: bool = False


@dataclass
class SchemaRegistrySection:
    url: str = ""
    timeout_s: float = 10.0
    subject_name_strategy: str = "topic"
    auto_register: bool = True


@dataclass
class SecuritySection:
    """Transport security. Secret material comes from a credential provider, not from here."""

    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: Optional[str] = None
    sasl_kerberos_service_name: str = "kafka"
    sasl_kerberos_domain_name: Optional[str] = None
    ssl_check_hostname: bool = True
    credential_source: str = "env"  # env | none


@dataclass
class ReconnectSection:
    max_attempts: int = RECONNECT_RETRY.max_attempts
    base_delay_s: float = RECONNECT_RETRY.base_delay
    max_delay_s: float = RECONNECT_RETRY.max_delay

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay_s,
            max_delay=self.max_delay_s,
        )


@dataclass
class PipelineConfig:
    """Pipeline configuration.

    Configuration structure:
        kafka: {...}            # Broker connection, topic, group
        producer: {...}         # Send tuning, backpressure, shutdown grace
        consumer: {...}         # Poll tuning, offset reset
        schema_registry: {...}  # Registry URL, timeout, subject naming
        security: {...}         # Protocol, SASL mechanism, hostname checks
        reconnect: {...}        # Backoff budget for connection errors

    Timing values ending in _ms are milliseconds, _s and _seconds are seconds.
    """

    kafka: KafkaSection = field(default_factory=KafkaSection)
    producer: ProducerSection = field(default_factory=ProducerSection)
    consumer: ConsumerSection = field(default_factory=ConsumerSection)
    schema_registry: SchemaRegistrySection = field(default_factory=SchemaRegistrySection)
    security: SecuritySection = field(default_factory=SecuritySection)
    reconnect: ReconnectSection = field(default_factory=ReconnectSection)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        sections = {
            "kafka": KafkaSection,
            "producer": ProducerSection,
            "consumer": ConsumerSection,
            "schema_registry": SchemaRegistrySection,
            "security": SecuritySection,
            "reconnect": ReconnectSection,
        }
        unknown = sorted(set(data) - set(sections))
        if unknown:
            raise ConfigurationError(f"Unknown config section(s): {', '.join(unknown)}")

        return cls(**{name: _build_section(section_cls, data.get(name), name) for name, section_cls in sections.items()})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> None:
        """Validate configuration for correctness and constraints.

        Collects every problem and raises one ConfigurationError listing them all.
        """
        problems: List[str] = []

        if not self.kafka.bootstrap_servers:
            problems.append("kafka.bootstrap_servers is required")
        if not self.kafka.topic:
            problems.append("kafka.topic is required")
        if not self.kafka.group_id:
            problems.append("kafka.group_id is required")
        if not self.schema_registry.url:
            problems.append("schema_registry.url is required")
        elif not self.schema_registry.url.startswith(("http://", "https://")):
            problems.append(f"schema_registry.url must be http(s), got {self.schema_registry.url!r}")

        self._validate_enum(problems, "consumer.auto_offset_reset", self.consumer.auto_offset_reset, VALID_OFFSET_RESETS)
        self._validate_enum(problems, "producer.compression_type", self.producer.compression_type, VALID_COMPRESSION)
        self._validate_enum(
            problems,
            "schema_registry.subject_name_strategy",
            self.schema_registry.subject_name_strategy,
            VALID_SUBJECT_STRATEGIES,
        )
        self._validate_enum(
            problems, "security.security_protocol", self.security.security_protocol, VALID_SECURITY_PROTOCOLS
        )
        self._validate_enum(problems, "security.credential_source", self.security.credential_source, ("env", "none"))
        if self.security.security_protocol.startswith("SASL_"):
            self._validate_enum(
                problems, "security.sasl_mechanism", self.security.sasl_mechanism, VALID_SASL_MECHANISMS
            )

        if str(self.producer.acks) not in ("0", "1", "all", "-1"):
            problems.append(f"producer.acks must be one of 0, 1, all, -1, got {self.producer.acks!r}")
        if self.producer.enable_idempotence and str(self.producer.acks) not in ("all", "-1"):
            problems.append("producer.enable_idempotence requires producer.acks=all")

        self._validate_min(problems, "producer.backpressure_timeout_s", self.producer.backpressure_timeout_s, 0, exclusive=True)
        self._validate_min(problems, "producer.shutdown_grace_s", self.producer.shutdown_grace_s, 0)
        self._validate_min(problems, "producer.interval_seconds", self.producer.interval_seconds, 0)
        self._validate_min(problems, "producer.linger_ms", self.producer.linger_ms, 0)
        self._validate_min(problems, "consumer.max_poll_records", self.consumer.max_poll_records, 1)
        self._validate_min(problems, "consumer.poll_timeout_s", self.consumer.poll_timeout_s, 0)
        self._validate_min(problems, "schema_registry.timeout_s", self.schema_registry.timeout_s, 0, exclusive=True)
        self._validate_min(problems, "reconnect.max_attempts", self.reconnect.max_attempts, 1)
        self._validate_min(problems, "reconnect.base_delay_s", self.reconnect.base_delay_s, 0)
        if self.reconnect.max_delay_s < self.reconnect.base_delay_s:
            problems.append("reconnect.max_delay_s must be >= reconnect.base_delay_s")

        # Kafka requires heartbeat < session timeout / 3 for stable membership
        if self.consumer.heartbeat_interval_ms * 3 > self.consumer.session_timeout_ms:
            problems.append(
                "consumer.heartbeat_interval_ms must be at most a third of consumer.session_timeout_ms"
            )

        if problems:
            raise ConfigurationError(
                "Invalid configuration:\n  - " + "\n  - ".join(problems),
                context={"problems": problems},
            )

    @staticmethod
    def _validate_enum(problems: List[str], name: str, value: Any, allowed: tuple) -> None:
        if value not in allowed:
            shown = ", ".join(str(a) for a in allowed)
            problems.append(f"{name} must be one of {shown}, got {value!r}")

    @staticmethod
    def _validate_min(problems: List[str], name: str, value: float, minimum: float, exclusive: bool = False) -> None:
        if exclusive and value <= minimum:
            problems.append(f"{name} must be > {minimum}, got {value}")
        elif not exclusive and value < minimum:
            problems.append(f"{name} must be >= {minimum}, got {value}")


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> PipelineConfig:
    """Load pipeline configuration from a YAML file and validate it."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    logger.info("Loading configuration from file: %s", config_path)
    try:
        yaml_data = load_yaml(config_path)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}", cause=e) from e
    yaml_data = _expand_env_vars(yaml_data)

    env_overrides: Dict[str, Any] = {}
    if os.getenv("KAFKA_BOOTSTRAP_SERVERS"):
        env_overrides["kafka"] = {"bootstrap_servers": os.environ["KAFKA_BOOTSTRAP_SERVERS"]}
    if os.getenv("SCHEMA_REGISTRY_URL"):
        env_overrides["schema_registry"] = {"url": os.environ["SCHEMA_REGISTRY_URL"]}
    yaml_data = _deep_merge(yaml_data, env_overrides)

    if overrides:
        logger.debug("Applying overrides: %s", list(overrides.keys()))
        yaml_data = _deep_merge(yaml_data, overrides)

    config = PipelineConfig.from_dict(yaml_data)
    config.validate()

    logger.debug(
        "Configuration loaded",
        extra={
            "bootstrap_servers": config.kafka.bootstrap_servers,
            "topic": config.kafka.topic,
            "registry_url": config.schema_registry.url,
        },
    )
    return config


_pipeline_config: Optional[PipelineConfig] = None


def get_config() -> PipelineConfig:
    """Get or load the singleton config instance."""
    global _pipeline_config
    if _pipeline_config is None:
        _pipeline_config = load_config()
    return _pipeline_config


def set_config(config: PipelineConfig) -> None:
    """Set the singleton config instance (useful for testing)."""
    global _pipeline_config
    _pipeline_config = config


def reset_config() -> None:
    """Reset the singleton config instance (forces reload on next get_config() call)."""
    global _pipeline_config
    _pipeline_config = None


def _cli_main() -> int:
    """CLI entry point for config validation and debugging."""
    import argparse

    parser = argparse.ArgumentParser(
        description="avropipe configuration tool",
        epilog="Example: python -m config.config --config config.yaml --validate --show",
    )
    parser.add_argument("--config", type=Path, help="Path to config.yaml (default: src/config/config.yaml)")
    parser.add_argument("--validate", action="store_true", help="Validate configuration")
    parser.add_argument("--show", action="store_true", help="Print the effective configuration")
    parser.add_argument("--json", action="store_true", help="Output in JSON format")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    if not args.validate and not args.show:
        parser.print_help()
        return 0

    try:
        config = load_config(config_path=args.config)
    except ConfigurationError as e:
        if args.json:
            print(json.dumps({"error": e.message, "problems": e.context.get("problems", [])}))
        else:
            print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        output: Dict[str, Any] = {}
        if args.validate:
            output["validation"] = {"passed": True, "errors": []}
        if args.show:
            output["config"] = config.to_dict()
        print(json.dumps(output, indent=2))
        return 0

    if args.validate:
        print("Configuration validation passed")
    if args.show:
        print(yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False))
    return 0


if __name__ == "__main__":
    sys.exit(_cli_main())
