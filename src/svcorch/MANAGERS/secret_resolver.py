# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Secret providers and the run-scoped resolver that turns secret references
into launch environment.

Resolved values are kept only in memory, wrapped in ``SecretStr`` so they
never show up in reprs or log records.
"""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional, Sequence

from dotenv import dotenv_values
from pydantic import SecretStr
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..MODELS.service_definition import SecretRef, ServiceDefinition
from ..errors import SecretUnavailableError

logger = logging.getLogger(__name__)


class SecretNotFound(KeyError):
    """The provider has no secret with the requested name."""


class SecretProviderError(Exception):
    """Transient provider failure; the lookup may be retried."""


class SecretProvider(ABC):
    """
    External source of secrets, such as a secrets manager or CI-injected variables.
    """

    @abstractmethod
    def get_secret(self, name: str) -> str:
        """
        Returns the value of a secret.

        :param name: Name of the secret.
        :raises SecretNotFound: If the secret does not exist.
        :raises SecretProviderError: On transient failures.
        """


class EnvironmentSecretProvider(SecretProvider):
    """Reads secrets from the process environment."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = environ if environ is not None else os.environ

    def get_secret(self, name: str) -> str:
        try:
            return self.environ[name]
        except KeyError:
            raise SecretNotFound(name) from None


class DotenvSecretProvider(SecretProvider):
    """
    Reads secrets from a ``.env`` file. The file is read on every lookup so
    no secret outlives the resolver's own cache.
    """

    def __init__(self, path: str):
        self.path = path

    def get_secret(self, name: str) -> str:
        if not os.path.exists(self.path):
            raise SecretNotFound(name)
        value = dotenv_values(self.path).get(name)
        if value is None:
            raise SecretNotFound(name)
        return value


class ChainedSecretProvider(SecretProvider):
    """Asks each provider in turn; the first one that has the secret wins."""

    def __init__(self, providers: Sequence[SecretProvider]):
        self.providers = list(providers)

    def get_secret(self, name: str) -> str:
        for provider in self.providers:
            try:
                return provider.get_secret(name)
            except SecretNotFound:
                continue
        raise SecretNotFound(name)


class SecretResolver:
    """
    Resolves secret references for one orchestration run.
    """

    def __init__(
        self,
        provider: SecretProvider,
        timeout: float = 10.0,
        attempts: int = 3,
        backoff: float = 0.5,
    ):
        """
        Initializes the resolver.

        :param provider: Where secrets come from.
        :param timeout: Upper bound in seconds for resolving one secret, retries included.
        :param attempts: Provider calls per secret on transient failures.
        :param backoff: Base delay of the exponential backoff between attempts.
        """
        self.provider = provider
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self._cache: Dict[str, SecretStr] = {}

    async def resolve(self, ref: SecretRef, service: str = "") -> SecretStr:
        """
        Resolves one secret, using the run cache when possible.

        :param ref: The secret reference.
        :param service: Service asking for the secret, for error reporting.
        :return: The secret value.
        :raises SecretUnavailableError: If the secret cannot be resolved.
        """
        cached = self._cache.get(ref.name)
        if cached is not None:
            return cached
        try:
            value = await asyncio.wait_for(self._fetch(ref.name), timeout=self.timeout)
        except SecretNotFound:
            raise SecretUnavailableError(service, ref.name, "not found") from None
        except SecretProviderError as e:
            raise SecretUnavailableError(service, ref.name, str(e)) from None
        except asyncio.TimeoutError:
            raise SecretUnavailableError(service, ref.name, "provider timed out") from None
        except Exception as e:
            logger.warning("Secret provider failed on %s: %s", ref.name, type(e).__name__)
            raise SecretUnavailableError(service, ref.name, f"{type(e).__name__}: {e}") from e
        secret = SecretStr(value)
        self._cache[ref.name] = secret
        logger.debug("Resolved secret %s for %s", ref.name, service)
        return secret

    async def _fetch(self, name: str) -> str:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.backoff, max=self.timeout),
            retry=retry_if_exception_type(SecretProviderError),
            reraise=True,
        ):
            with attempt:
                return await asyncio.to_thread(self.provider.get_secret, name)
        raise SecretProviderError(name)

    async def resolve_environment(self, service_def: ServiceDefinition) -> Dict[str, str]:
        """
        Builds the launch environment of a service, secrets included.

        :param service_def: The service definition.
        :return: Variable name to plaintext value.
        :raises SecretUnavailableError: On the first secret that cannot be resolved.
        """
        env: Dict[str, str] = {}
        for key, value in sorted(service_def.environment.items()):
            if isinstance(value, SecretRef):
                env[key] = (await self.resolve(value, service_def.name)).get_secret_value()
            else:
                env[key] = value
        return env

    def clear(self) -> None:
        """
        Drops every cached secret. Called when the run ends.
        """
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
