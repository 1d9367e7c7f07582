"""Shared aiokafka connection and security configuration builders."""

import logging
import os
from typing import Any

from aiokafka.helpers import create_ssl_context

from config.config import PipelineConfig
from core.auth.credentials import KafkaCredentials
from core.errors.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def build_connection_config(config: PipelineConfig) -> dict[str, Any]:
    """Connection settings common to AIOKafkaProducer and AIOKafkaConsumer."""
    return {
        "bootstrap_servers": config.kafka.bootstrap_servers,
        "client_id": config.kafka.client_id,
        "request_timeout_ms": config.kafka.request_timeout_ms,
        "metadata_max_age_ms": config.kafka.metadata_max_age_ms,
        "connections_max_idle_ms": config.kafka.connections_max_idle_ms,
    }


def _build_ssl_context(config: PipelineConfig, credentials: KafkaCredentials):
    try:
        context = create_ssl_context(
            cafile=credentials.ssl_cafile,
            certfile=credentials.ssl_certfile,
            keyfile=credentials.ssl_keyfile,
            password=credentials.ssl_key_password,
        )
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot build SSL context: {e}", cause=e) from e

    if not config.security.ssl_check_hostname:
        logger.warning("SSL hostname verification disabled")
        context.check_hostname = False
    return context


def build_kafka_security_config(
    config: PipelineConfig,
    credentials: KafkaCredentials | None = None,
) -> dict[str, Any]:
    """Build aiokafka security kwargs from config plus credential material.

    Handles PLAIN, SCRAM-SHA-256/512 and GSSAPI SASL mechanisms and SSL context
    creation. Returns an empty dict for PLAINTEXT connections.
    """
    security = config.security
    protocol = security.security_protocol
    credentials = credentials or KafkaCredentials()

    if protocol == "PLAINTEXT":
        return {}

    security_config: dict[str, Any] = {"security_protocol": protocol}

    if "SSL" in protocol:
        security_config["ssl_context"] = _build_ssl_context(config, credentials)

    if protocol.startswith("SASL_"):
        mechanism = security.sasl_mechanism
        security_config["sasl_mechanism"] = mechanism

        if mechanism in ("PLAIN", "SCRAM-SHA-256", "SCRAM-SHA-512"):
            if not credentials.sasl_username or credentials.sasl_password is None:
                raise ConfigurationError(f"SASL {mechanism} requires a username and password")
            security_config["sasl_plain_username"] = credentials.sasl_username
            security_config["sasl_plain_password"] = credentials.sasl_password
        elif mechanism == "GSSAPI":
            security_config["sasl_kerberos_service_name"] = security.sasl_kerberos_service_name
            if security.sasl_kerberos_domain_name:
                security_config["sasl_kerberos_domain_name"] = security.sasl_kerberos_domain_name
            if credentials.kerberos_keytab:
                # The GSSAPI library picks the client keytab up from the environment
                os.environ["KRB5_CLIENT_KTNAME"] = credentials.kerberos_keytab
            if credentials.kerberos_principal:
                logger.info("Using Kerberos principal %s", credentials.kerberos_principal)
        else:
            raise ConfigurationError(f"Unsupported SASL mechanism: {mechanism!r}")

    return security_config


def describe_security_config(security_config: dict[str, Any]) -> dict[str, Any]:
    """Loggable view of a security config: secrets replaced by whether they are set."""
    return {
        "security_protocol": security_config.get("security_protocol", "PLAINTEXT"),
        "sasl_mechanism": security_config.get("sasl_mechanism", "N/A"),
        "sasl_username": security_config.get("sasl_plain_username", "N/A"),
        "sasl_password_set": bool(security_config.get("sasl_plain_password")),
        "ssl_context_set": "ssl_context" in security_config,
    }
