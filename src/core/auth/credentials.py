"""
Credential providers for the broker connection and the schema registry.

Security material is never hardcoded: a CredentialProvider hands the
pipeline whatever it needs for the configured security protocol.

Supported material:
    - SASL PLAIN / SCRAM: username and password
    - SASL GSSAPI (Kerberos): principal and keytab file
    - SSL: CA bundle, client certificate, client key and key password
    - Schema registry: HTTP basic-auth user info

Example:
    >>> provider = EnvironmentCredentialProvider()
    >>> creds = provider.kafka_credentials()
    >>> auth = provider.registry_auth()
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Protocol, runtime_checkable

from core.errors.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KafkaCredentials:
    """Secret material for the broker connection. Every field is optional."""

    sasl_username: Optional[str] = None
    sasl_password: Optional[str] = None
    kerberos_principal: Optional[str] = None
    kerberos_keytab: Optional[str] = None
    ssl_cafile: Optional[str] = None
    ssl_certfile: Optional[str] = None
    ssl_keyfile: Optional[str] = None
    ssl_key_password: Optional[str] = None

    def __repr__(self) -> str:
        # Never print secrets, only whether they are present
        present = [name for name, value in vars(self).items() if value]
        return f"KafkaCredentials(present={present})"


@dataclass(frozen=True)
class RegistryAuth:
    """HTTP basic-auth user info for the schema registry."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"RegistryAuth(username={self.username!r})"


@runtime_checkable
class CredentialProvider(Protocol):
    """Source of broker and registry credentials."""

    def kafka_credentials(self) -> KafkaCredentials:
        ...

    def registry_auth(self) -> Optional[RegistryAuth]:
        ...


class StaticCredentialProvider:
    """Provider over credentials known up front (tests, embedded use)."""

    def __init__(
        self,
        kafka: Optional[KafkaCredentials] = None,
        registry: Optional[RegistryAuth] = None,
    ):
        self._kafka = kafka or KafkaCredentials()
        self._registry = registry

    def kafka_credentials(self) -> KafkaCredentials:
        return self._kafka

    def registry_auth(self) -> Optional[RegistryAuth]:
        return self._registry


class EnvironmentCredentialProvider:
    """
    Reads credentials from environment variables.

    For every variable NAME, NAME_FILE may instead point at a file holding the
    value (mounted secrets). The direct variable wins when both are set.

    Variables:
        KAFKA_SASL_USERNAME, KAFKA_SASL_PASSWORD
        KAFKA_KERBEROS_PRINCIPAL, KAFKA_KERBEROS_KEYTAB
        KAFKA_SSL_CAFILE, KAFKA_SSL_CERTFILE, KAFKA_SSL_KEYFILE, KAFKA_SSL_KEY_PASSWORD
        SCHEMA_REGISTRY_USERNAME, SCHEMA_REGISTRY_PASSWORD
    """

    FIELDS = {
        "sasl_username": "KAFKA_SASL_USERNAME",
        "sasl_password": "KAFKA_SASL_PASSWORD",
        "kerberos_principal": "KAFKA_KERBEROS_PRINCIPAL",
        "kerberos_keytab": "KAFKA_KERBEROS_KEYTAB",
        "ssl_cafile": "KAFKA_SSL_CAFILE",
        "ssl_certfile": "KAFKA_SSL_CERTFILE",
        "ssl_keyfile": "KAFKA_SSL_KEYFILE",
        "ssl_key_password": "KAFKA_SSL_KEY_PASSWORD",
    }

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = os.environ if environ is None else environ

    def _read(self, name: str) -> Optional[str]:
        value = self._environ.get(name)
        if value:
            return value

        file_path = self._environ.get(f"{name}_FILE")
        if not file_path:
            return None

        try:
            return Path(file_path).read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read {name}_FILE at {file_path}",
                cause=e,
                context={"variable": f"{name}_FILE"},
            ) from e

    def kafka_credentials(self) -> KafkaCredentials:
        values = {field: self._read(var) for field, var in self.FIELDS.items()}
        creds = KafkaCredentials(**values)
        logger.debug("Loaded broker credentials from environment: %r", creds)
        return creds

    def registry_auth(self) -> Optional[RegistryAuth]:
        username = self._read("SCHEMA_REGISTRY_USERNAME")
        password = self._read("SCHEMA_REGISTRY_PASSWORD")
        if not username:
            return None
        return RegistryAuth(username=username, password=password or "")


__all__ = [
    "KafkaCredentials",
    "RegistryAuth",
    "CredentialProvider",
    "StaticCredentialProvider",
    "EnvironmentCredentialProvider",
]
