"""Agent-side resolution of secret references in task environments.

A task env value may be a plain string or a reference such as::

    PASSWORD: {aws_secret: ad-join, key: password}

The server passes references through untouched; the agent looks them up in
AWS Secrets Manager right before running the command.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Mapping, Optional

try:  # pragma: no cover
    import boto3  # type: ignore
except Exception:  # pragma: no cover
    boto3 = None

from .errors import ConfigError

logger = logging.getLogger(__name__)


class SecretResolver:
    def __init__(self, *, region: Optional[str] = None):
        self.region = region
        self._client = None
        self._secrets: dict[str, str] = {}

    def resolve_env(self, env: Mapping[str, Any]) -> dict[str, str]:
        resolved: dict[str, str] = {}
        for name, value in env.items():
            if isinstance(value, Mapping):
                resolved[str(name)] = self.lookup(str(name), value)
            else:
                resolved[str(name)] = str(value)
        return resolved

    def lookup(self, name: str, ref: Mapping[str, Any]) -> str:
        secret_id = ref.get("aws_secret")
        if not secret_id:
            raise ConfigError(f"env {name} must be a string or an aws_secret reference")
        raw = self._secret_string(str(secret_id))
        key = ref.get("key")
        if key is None:
            return raw
        try:
            payload = json.loads(raw)
        except ValueError:
            # Plaintext secrets have no keys; the whole value is the answer.
            return raw
        if not isinstance(payload, dict):
            return raw
        if str(key) not in payload:
            raise ConfigError(f"secret {secret_id} has no key {key!r}")
        return str(payload[str(key)])

    def _secret_string(self, secret_id: str) -> str:
        if secret_id in self._secrets:
            return self._secrets[secret_id]
        response = self._secretsmanager().get_secret_value(SecretId=secret_id)
        text = response.get("SecretString")
        if text is None:
            binary = response.get("SecretBinary")
            if binary is None:
                raise RuntimeError(f"Secret {secret_id} has no SecretString or SecretBinary")
            text = base64.b64decode(binary).decode()
        logger.debug("Fetched secret %s", secret_id)
        self._secrets[secret_id] = text
        return text

    def _secretsmanager(self):
        if boto3 is None:
            raise RuntimeError("boto3 is required to resolve aws_secret references")
        if self._client is None:
            kwargs = {"region_name": self.region} if self.region else {}
            self._client = boto3.client("secretsmanager", **kwargs)
        return self._client
