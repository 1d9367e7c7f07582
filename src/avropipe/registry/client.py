"""Schema registry REST client with insert-only caching and retry."""

import asyncio
import json
import logging
from typing import Any

import aiohttp

from avropipe.common.metrics import record_registry_request
from avropipe.registry.models import Schema
from core.auth.credentials import RegistryAuth
from core.errors.exceptions import (
    ConfigurationError,
    MalformedPayload,
    PermanentError,
    PipelineError,
    RegistryAuthError,
    RegistryUnavailable,
    SchemaMismatch,
    UnknownSchema,
    classify_http_status,
)
from core.logging.utilities import log_with_context
from core.resilience.retry import RetryConfig, with_retry_async
from core.types import ErrorCategory

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/vnd.schemaregistry.v1+json"

DEFAULT_REGISTRY_RETRY = RetryConfig(
    max_attempts=3,
    base_delay=0.2,
    max_delay=2.0,
    never_retry={RegistryAuthError},
)


class _NotFound(PermanentError):
    """404 from the registry; callers translate it into the domain error."""

    def __init__(self, error_code: int | None, message: str):
        super().__init__(message)
        self.error_code = error_code


def classify_registry_error(status: int, url: str, body: str = "") -> PipelineError:
    """Map a non-2xx registry response to the exception the caller should see."""
    error_code = None
    message = body[:200]
    try:
        payload = json.loads(body) if body else {}
        error_code = payload.get("error_code")
        message = payload.get("message", message)
    except (ValueError, AttributeError):
        pass

    context = {"http_status": status, "registry_error_code": error_code}

    if status == 404:
        return _NotFound(error_code, f"Not found ({status}): {url} {message}")
    if status == 409:
        return SchemaMismatch(f"Schema incompatible with subject ({status}): {message}")
    if status == 422:
        return SchemaMismatch(f"Invalid schema ({status}): {message}")

    category = classify_http_status(status)
    if category == ErrorCategory.AUTH:
        return RegistryAuthError(f"Registry rejected credentials ({status}): {url}", status_code=status, context=context)
    if category == ErrorCategory.TRANSIENT:
        return RegistryUnavailable(f"Registry error ({status}): {url}", status_code=status, context=context)

    return PermanentError(f"Registry client error ({status}): {url} {message}", context=context)


class SchemaRegistryClient:
    """
    Async client for a Confluent-compatible schema registry.

    Lookups are cached per process and the caches are insert-only: a schema id
    never changes meaning, so entries are never invalidated.
    """

    def __init__(
        self,
        url: str,
        timeout_s: float = 10.0,
        auth: RegistryAuth | None = None,
        retry_config: RetryConfig | None = None,
        subject_name_strategy: str = "topic",
        auto_register: bool = True,
    ):
        self.url = url.rstrip("/") if url else ""
        if not self.url.startswith(("http://", "https://")):
            raise ConfigurationError(f"Schema registry url must start with http:// or https://, got: {url!r}")
        if subject_name_strategy not in ("topic", "record"):
            raise ConfigurationError(f"Unknown subject_name_strategy: {subject_name_strategy!r}")

        self.timeout_s = timeout_s
        self.retry_config = retry_config or DEFAULT_REGISTRY_RETRY
        self.subject_name_strategy = subject_name_strategy
        self.auto_register = auto_register
        self._auth = aiohttp.BasicAuth(auth.username, auth.password) if auth else None

        self._session: aiohttp.ClientSession | None = None
        self._closed = False

        self._schemas_by_id: dict[int, Schema] = {}
        self._ids_by_subject: dict[tuple[str, str], int] = {}

        logger.info(
            "SchemaRegistryClient initialized",
            extra={
                "registry_url": self.url,
                "operation": "init",
                "state": "auth" if auth else "anonymous",
            },
        )

    @classmethod
    def from_config(cls, config, auth: RegistryAuth | None = None) -> "SchemaRegistryClient":
        section = config.schema_registry
        return cls(
            url=section.url,
            timeout_s=section.timeout_s,
            auth=auth,
            subject_name_strategy=section.subject_name_strategy,
            auto_register=section.auto_register,
        )

    async def __aenter__(self) -> "SchemaRegistryClient":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_session(self) -> None:
        if self._closed:
            raise RuntimeError("SchemaRegistryClient is closed, cannot create new session")
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Accept": CONTENT_TYPE, "Content-Type": CONTENT_TYPE},
                auth=self._auth,
            )

    async def close(self) -> None:
        self._closed = True
        if self._session and not self._session.closed:
            await self._session.close()
            await asyncio.sleep(0)
        self._session = None

    def subject_for(self, topic: str | None, schema: Schema) -> str:
        """Subject a value schema is registered under, per the configured naming strategy."""
        if self.subject_name_strategy == "record":
            return schema.full_name
        if not topic:
            raise ConfigurationError("topic is required with subject_name_strategy='topic'")
        return f"{topic}-value"

    def cached_schema(self, schema_id: int) -> Schema | None:
        return self._schemas_by_id.get(schema_id)

    async def _request(self, method: str, path: str, operation: str, json_body: dict | None = None) -> Any:
        await self._ensure_session()
        url = f"{self.url}{path}"
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        try:
            async with self._session.request(
                method,
                url,
                json=json_body,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as response:
                duration = loop.time() - start_time
                if response.status >= 300:
                    body = await response.text()
                    record_registry_request(operation, False, duration)
                    error = classify_registry_error(response.status, url, body)
                    if not isinstance(error, _NotFound):
                        logger.warning(
                            "Schema registry request failed",
                            extra={
                                "operation": operation,
                                "http_method": method,
                                "registry_url": url,
                                "http_status": response.status,
                                "error_category": error.category.value,
                                "duration_ms": round(duration * 1000, 2),
                            },
                        )
                    raise error

                data = await response.json(content_type=None)
                record_registry_request(operation, True, duration)
                logger.debug(
                    "Schema registry request succeeded",
                    extra={
                        "operation": operation,
                        "http_method": method,
                        "http_status": response.status,
                        "duration_ms": round(duration * 1000, 2),
                    },
                )
                return data

        except (TimeoutError, asyncio.TimeoutError) as e:
            record_registry_request(operation, False, loop.time() - start_time)
            raise RegistryUnavailable(
                f"Registry timeout after {self.timeout_s}s: {url}",
                cause=e,
                context={"operation": operation},
            ) from e
        except aiohttp.ClientError as e:
            record_registry_request(operation, False, loop.time() - start_time)
            raise RegistryUnavailable(
                f"Registry connection error: {e}",
                cause=e,
                context={"operation": operation},
            ) from e

    async def _request_with_retry(self, method: str, path: str, operation: str, json_body: dict | None = None) -> Any:
        retrying = with_retry_async(config=self.retry_config, wrap_errors=False)(self._request)
        return await retrying(method, path, operation, json_body)

    async def register(self, subject: str, schema: Schema) -> int:
        """
        Register ``schema`` under ``subject`` and return its id.

        Registering an already-registered schema is idempotent and returns the
        existing id. With auto_register disabled the schema is only looked up.
        """
        cache_key = (subject, schema.canonical())
        cached = self._ids_by_subject.get(cache_key)
        if cached is not None:
            return cached

        body = {"schema": schema.canonical()}
        try:
            if self.auto_register:
                data = await self._request_with_retry("POST", f"/subjects/{subject}/versions", "register", body)
            else:
                data = await self._request_with_retry("POST", f"/subjects/{subject}", "check", body)
        except _NotFound as e:
            raise SchemaMismatch(
                f"Schema {schema.full_name} is not registered under subject {subject}",
                schema_name=schema.full_name,
                cause=e,
            ) from e

        try:
            schema_id = int(data["id"])
        except (KeyError, TypeError, ValueError) as e:
            raise RegistryUnavailable(f"Unexpected registry response for {subject}: {data!r}", cause=e) from e

        # setdefault keeps the first insert if two registrations raced
        schema_id = self._ids_by_subject.setdefault(cache_key, schema_id)
        self._schemas_by_id.setdefault(schema_id, schema)

        log_with_context(
            logger,
            logging.INFO,
            "Schema registered",
            subject=subject,
            schema_id=schema_id,
            schema_name=schema.full_name,
        )
        return schema_id

    async def get_schema(self, schema_id: int) -> Schema:
        """Resolve a schema id; UnknownSchema when the registry does not know it."""
        cached = self._schemas_by_id.get(schema_id)
        if cached is not None:
            return cached

        try:
            data = await self._request_with_retry("GET", f"/schemas/ids/{schema_id}", "lookup")
        except _NotFound as e:
            raise UnknownSchema(schema_id, cause=e) from e
        except PermanentError as e:
            # Registry rejected the lookup itself; no payload under this id can be read
            raise UnknownSchema(schema_id, cause=e) from e

        try:
            schema = Schema.from_avro(data["schema"])
        except (KeyError, TypeError) as e:
            raise RegistryUnavailable(f"Unexpected registry response for id {schema_id}: {data!r}", cause=e) from e
        except (SchemaMismatch, MalformedPayload) as e:
            # Registry holds a schema we cannot use (e.g. not a record); no payload under it decodes
            raise UnknownSchema(schema_id, cause=e) from e

        schema = self._schemas_by_id.setdefault(schema_id, schema)
        log_with_context(logger, logging.DEBUG, "Schema resolved", schema_id=schema_id, schema_name=schema.full_name)
        return schema


__all__ = [
    "SchemaRegistryClient",
    "classify_registry_error",
    "DEFAULT_REGISTRY_RETRY",
]
