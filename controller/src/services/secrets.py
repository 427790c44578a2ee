"""
Secret resolution and masking.

Secrets are referenced by name in the pipeline configuration and resolved
only when a step is dispatched. Resolved values never reach logs or
recorded step output.
"""

import base64
import logging
import os
from typing import Iterable, Mapping, Optional, Set

from kubernetes.client.rest import ApiException

from controller.src.config import get_settings
from controller.src.exceptions import ExternalServiceError, SecretResolutionError
from controller.src.k8s.client import get_core_api

logger = logging.getLogger(__name__)
settings = get_settings()

MASK = "********"

class SecretStore:
    def resolve(self, name: str) -> str:
        raise NotImplementedError

class EnvSecretStore(SecretStore):
    """Secrets from environment variables, e.g. slack_webhook -> CONDUIT_SECRET_SLACK_WEBHOOK."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None, prefix: Optional[str] = None):
        self.environ = os.environ if environ is None else environ
        self.prefix = settings.secret_env_prefix if prefix is None else prefix

    def variable_name(self, name: str) -> str:
        return self.prefix + name.upper().replace("-", "_")

    def resolve(self, name: str) -> str:
        variable = self.variable_name(name)
        value = self.environ.get(variable)
        if value is None:
            raise SecretResolutionError(name, f"{variable} is not set")
        return value

class KubernetesSecretStore(SecretStore):
    """Secrets stored as keys of one namespaced Kubernetes Secret."""

    def __init__(self, secret_name: str, namespace: str = None):
        self.secret_name = secret_name
        self.namespace = namespace or settings.k8s_namespace

    def resolve(self, name: str) -> str:
        try:
            secret = get_core_api().read_namespaced_secret(
                name=self.secret_name,
                namespace=self.namespace,
            )
        except ApiException as e:
            raise SecretResolutionError(name, e.reason)
        except ExternalServiceError as e:
            raise SecretResolutionError(name, str(e))

        data = secret.data or {}
        if name not in data:
            raise SecretResolutionError(name, f"key missing from secret {self.secret_name}")
        return base64.b64decode(data[name]).decode("utf-8")

class SecretMasker(logging.Filter):
    """Replaces known secret values in text and log records."""

    def __init__(self, values: Iterable[str] = ()):
        super().__init__()
        self._values: Set[str] = set()
        self.add(*values)

    def add(self, *values: str):
        for value in values:
            # Masking tiny values would mangle unrelated output
            if value and len(value) >= 3:
                self._values.add(value)

    def mask(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return text
        for value in sorted(self._values, key=len, reverse=True):
            text = text.replace(value, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if self._values:
            record.msg = self.mask(record.getMessage())
            record.args = None
        return True

masker = SecretMasker()

def install_masker(logger_: logging.Logger = None):
    """Attach the global masker to every handler of `logger_` (root by default)."""
    target = logger_ or logging.getLogger()
    for handler in target.handlers:
        if masker not in handler.filters:
            handler.addFilter(masker)

def create_secret_store() -> SecretStore:
    if settings.k8s_secret_name:
        return KubernetesSecretStore(settings.k8s_secret_name)
    return EnvSecretStore()
