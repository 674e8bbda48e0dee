from __future__ import annotations

import base64
import json
import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

try:  # pragma: no cover
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

try:  # pragma: no cover
    import boto3  # type: ignore
except Exception:  # pragma: no cover
    boto3 = None

from .errors import PlanValidationError

logger = logging.getLogger(__name__)

REDACTED = "********"


class SecretResolver:
    """Resolves secret references in variable mappings.

    A value of the form ``{"aws_secret": "name", "key": "field"}`` is fetched
    from AWS Secrets Manager. Every value resolved this way is remembered in
    :attr:`revealed` so it can be redacted later.
    """

    def __init__(self):
        self._cache: dict[tuple[str, Optional[str]], Any] = {}
        self._lock = threading.Lock()
        self.revealed: set[str] = set()

    def resolve(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: self._resolve_value(v) for k, v in values.items()}

    def _resolve_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            if "aws_secret" in value:
                return self._resolve_aws_secret(value)
            return {k: self._resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(v) for v in value]
        return value

    def _resolve_aws_secret(self, spec: dict[str, Any]) -> Any:
        if boto3 is None:
            raise RuntimeError("boto3 is required to resolve aws_secret references")
        name = str(spec["aws_secret"])
        key = spec.get("key")
        cache_key = (name, key if key is None else str(key))
        with self._lock:
            if cache_key in self._cache:
                return self._cache[cache_key]

        logger.debug("Fetching secret %s from Secrets Manager", name)
        client = boto3.client("secretsmanager")
        response = client.get_secret_value(SecretId=name)
        secret_str = response.get("SecretString")
        if secret_str is None:
            binary = response.get("SecretBinary")
            if binary is None:
                raise RuntimeError(f"Secret {name} has no SecretString or SecretBinary")
            secret_str = base64.b64decode(binary).decode()

        value: Any = secret_str
        if key is not None:
            try:
                payload = json.loads(secret_str)
            except json.JSONDecodeError:
                payload = None
            # Plain-text secrets are returned whole even when a key is given.
            if isinstance(payload, dict):
                value = payload[str(key)]

        with self._lock:
            self._cache[cache_key] = value
            self.revealed.update(_leaf_strings(value))
        return value


def load_vault_file(path: Path, resolver: Optional[SecretResolver] = None) -> dict[str, Any]:
    """Read a key/value secrets file (TOML, YAML or JSON) and resolve references."""
    path = Path(path)
    text = path.read_text()
    suffix = path.suffix.lower()
    try:
        if suffix == ".toml":
            data = tomllib.loads(text)
        elif suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text) or {}
    except (tomllib.TOMLDecodeError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise PlanValidationError(f"{path}: cannot parse vault file: {exc}", path=str(path)) from None
    if not isinstance(data, dict):
        raise PlanValidationError(f"{path}: vault file must be a mapping", path=str(path))
    resolver = resolver or SecretResolver()
    return resolver.resolve(data)


class Redactor:
    """Replaces known secret values with a placeholder."""

    def __init__(self, secrets: Iterable[Any] = ()):
        self._secrets: set[str] = set()
        self.add(secrets)

    def add(self, secrets: Iterable[Any]) -> None:
        for value in secrets:
            for text in _leaf_strings(value):
                if text:
                    self._secrets.add(text)

    def __bool__(self) -> bool:
        return bool(self._secrets)

    def redact(self, text: str) -> str:
        if not text or not self._secrets:
            return text
        # Longest first so a secret containing another is replaced whole.
        for secret in sorted(self._secrets, key=len, reverse=True):
            if secret in text:
                text = text.replace(secret, REDACTED)
        return text

    def redact_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.redact(value)
        if isinstance(value, dict):
            return {k: self.redact_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.redact_value(v) for v in value]
        return value


def _leaf_strings(value: Any) -> list[str]:
    if isinstance(value, dict):
        return [text for item in value.values() for text in _leaf_strings(item)]
    if isinstance(value, (list, tuple, set)):
        return [text for item in value for text in _leaf_strings(item)]
    if value is None or isinstance(value, bool):
        return []
    return [str(value)]


class RedactingFilter(logging.Filter):
    """Logging filter that scrubs secret values from formatted messages."""

    def __init__(self, redactor: Redactor):
        super().__init__()
        self.redactor = redactor

    def filter(self, record: logging.LogRecord) -> bool:
        if self.redactor:
            record.msg = self.redactor.redact(record.getMessage())
            record.args = None
        return True
