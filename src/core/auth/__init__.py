"""
Authentication module.

Components:
    - KafkaCredentials / RegistryAuth: secret material, repr-safe
    - CredentialProvider: protocol the pipeline reads credentials through
    - StaticCredentialProvider: fixed credentials
    - EnvironmentCredentialProvider: environment variables and *_FILE secrets
"""

from .credentials import (
    CredentialProvider,
    EnvironmentCredentialProvider,
    KafkaCredentials,
    RegistryAuth,
    StaticCredentialProvider,
)

__all__ = [
    "CredentialProvider",
    "EnvironmentCredentialProvider",
    "KafkaCredentials",
    "RegistryAuth",
    "StaticCredentialProvider",
]
