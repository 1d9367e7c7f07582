"""Configuration loading for the avro pipeline.

Configuration lives in one YAML file (default: src/config/config.yaml) with
sections kafka, producer, consumer, schema_registry, security and reconnect.

Main Functions
--------------
    - load_config(): Load and validate configuration from YAML
    - get_config(): Get or load singleton config instance
    - set_config() / reset_config(): Replace or clear the singleton (tests)

Usage
-----
    >>> from config import load_config
    >>> config = load_config(Path("config.yaml"))
    >>> config.kafka.topic
    'users'
"""

from config.config import (
    DEFAULT_CONFIG_FILE,
    ConsumerSection,
    KafkaSection,
    PipelineConfig,
    ProducerSection,
    ReconnectSection,
    SchemaRegistrySection,
    SecuritySection,
    get_config,
    load_config,
    reset_config,
    set_config,
)

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "PipelineConfig",
    "KafkaSection",
    "ProducerSection",
    "ConsumerSection",
    "SchemaRegistrySection",
    "SecuritySection",
    "ReconnectSection",
    "load_config",
    "get_config",
    "set_config",
    "reset_config",
]
