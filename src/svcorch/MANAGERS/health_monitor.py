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
Health probing for services: Docker-style health check commands or HTTP
endpoints, polled with a start period, per-attempt timeouts and a retry budget.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

import httpx

from ..MODELS.service_definition import HealthCheck

logger = logging.getLogger(__name__)

_OUTPUT_LIMIT = 500


class ProbeStatus(str, Enum):
    """Outcome of a single probe attempt."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    ERROR = "error"


@dataclass(frozen=True)
class ProbeResult:
    """Result of one probe attempt."""

    status: ProbeStatus
    output: str = ""

    @property
    def healthy(self) -> bool:
        return self.status == ProbeStatus.HEALTHY


class HealthOutcome(str, Enum):
    """Final verdict of waiting for a service to become healthy."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    EXITED = "exited"


@dataclass(frozen=True)
class HealthReport:
    """Verdict of ``wait_until_healthy`` with the attempt count and last probe output."""

    outcome: HealthOutcome
    attempts: int = 0
    last_output: str = ""


class HealthProber:
    """
    Runs health checks. Every attempt is bounded by the check's timeout, so
    a stalled command or endpoint counts as a failed attempt.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initializes the prober.

        :param http_client: Client for endpoint checks; one is created per probe if omitted.
        """
        self.http_client = http_client

    async def probe(self, spec: HealthCheck, env: Optional[Dict[str, str]] = None) -> ProbeResult:
        """
        Runs one probe attempt.

        :param spec: The health check definition.
        :param env: Environment for check commands.
        :return: The attempt result.
        """
        try:
            return await asyncio.wait_for(self._attempt(spec, env), timeout=spec.timeout)
        except asyncio.TimeoutError:
            return ProbeResult(ProbeStatus.UNHEALTHY, "Health check timed out")
        except (OSError, httpx.HTTPError) as e:
            return ProbeResult(ProbeStatus.ERROR, f"{type(e).__name__}: {e}")

    async def _attempt(self, spec: HealthCheck, env: Optional[Dict[str, str]]) -> ProbeResult:
        if spec.endpoint:
            return await self._probe_endpoint(spec.endpoint, spec.timeout)
        return await self._probe_command(spec.test, env)

    async def _probe_command(self, test, env: Optional[Dict[str, str]]) -> ProbeResult:
        if test[0] == "CMD-SHELL":
            proc = await asyncio.create_subprocess_shell(
                " ".join(test[1:]),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        else:
            argv = test[1:] if test[0] == "CMD" else test
            proc = await asyncio.create_subprocess_exec(
                *argv,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Timed out or cancelled: do not leave the check running
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode == 0:
            return ProbeResult(ProbeStatus.HEALTHY, stdout.decode(errors="replace")[:_OUTPUT_LIMIT])
        detail = stderr.decode(errors="replace")[:_OUTPUT_LIMIT] if stderr else ""
        return ProbeResult(ProbeStatus.UNHEALTHY, detail or f"Exit code: {proc.returncode}")

    async def _probe_endpoint(self, url: str, timeout: float) -> ProbeResult:
        if self.http_client is not None:
            resp = await self.http_client.get(url, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=False) as client:
                resp = await client.get(url)
        if resp.status_code < 400:
            return ProbeResult(ProbeStatus.HEALTHY, f"HTTP {resp.status_code}")
        return ProbeResult(ProbeStatus.UNHEALTHY, f"HTTP {resp.status_code}")

    async def wait_until_healthy(
        self,
        spec: HealthCheck,
        env: Optional[Dict[str, str]] = None,
        is_alive: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> HealthReport:
        """
        Polls until the first successful probe, ``retries`` consecutive failures,
        or the instance going away.

        Probing starts once ``start_period`` has elapsed and repeats every ``interval``.

        :param spec: The health check definition.
        :param env: Environment for check commands.
        :param is_alive: Optional callback reporting whether the instance still runs.
        :return: The final verdict.
        """
        if spec.start_period > 0:
            await asyncio.sleep(spec.start_period)

        failing_streak = 0
        attempts = 0
        last_output = ""
        while True:
            if is_alive is not None and not await is_alive():
                return HealthReport(HealthOutcome.EXITED, attempts, last_output)

            result = await self.probe(spec, env)
            attempts += 1
            last_output = result.output
            if result.healthy:
                return HealthReport(HealthOutcome.HEALTHY, attempts, last_output)

            failing_streak += 1
            logger.debug("Health probe failed (%d/%d): %s", failing_streak, spec.retries, result.output)
            if failing_streak >= spec.retries:
                return HealthReport(HealthOutcome.UNHEALTHY, attempts, last_output)
            await asyncio.sleep(spec.interval)
