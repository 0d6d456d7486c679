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
Error taxonomy for the orchestrator.

Only ConfigError (and its CycleError subclass) aborts a run. Every other
error is scoped to a single service and recorded on its instance.
"""
from typing import Any, Dict, Iterable, List


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""

    kind = "orchestrator_error"

    def to_payload(self) -> Dict[str, Any]:
        """
        Structured form of the error, safe to log and persist.
        """
        return {"kind": self.kind, "message": str(self)}


class ConfigError(OrchestratorError):
    """Malformed descriptor set. Fatal, raised before any launch."""

    kind = "config_error"


class CycleError(ConfigError):
    """The dependency relation is not acyclic."""

    kind = "cycle_error"

    def __init__(self, participants: Iterable[str]):
        self.participants: List[str] = sorted(participants)
        super().__init__(
            f"Circular dependency detected between: {', '.join(self.participants)}"
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["participants"] = list(self.participants)
        return payload


class SecretUnavailableError(OrchestratorError):
    """A secret referenced by a service could not be resolved."""

    kind = "secret_unavailable"

    def __init__(self, service: str, secret_name: str, reason: str = ""):
        self.service = service
        self.secret_name = secret_name
        self.reason = reason
        message = f"Secret {secret_name} unavailable for service {service}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update(service=self.service, secret_name=self.secret_name)
        return payload


class HealthCheckTimeout(OrchestratorError):
    """A service did not become healthy within its retry budget."""

    kind = "health_check_timeout"

    def __init__(self, service: str, attempts: int, last_output: str = ""):
        self.service = service
        self.attempts = attempts
        self.last_output = last_output
        super().__init__(
            f"Service {service} failed {attempts} consecutive health checks"
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update(
            service=self.service, attempts=self.attempts, last_output=self.last_output
        )
        return payload


class RuntimeDriverError(OrchestratorError):
    """A launch, stop or status call on the runtime driver failed."""

    kind = "runtime_driver_error"

    def __init__(self, service: str, operation: str, reason: str = ""):
        self.service = service
        self.operation = operation
        self.reason = reason
        message = f"Runtime driver {operation} failed for service {service}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update(service=self.service, operation=self.operation)
        return payload


class UnexpectedExit(OrchestratorError):
    """The runtime reported that a running instance went away."""

    kind = "unexpected_exit"

    def __init__(self, service: str, exit_code=None):
        self.service = service
        self.exit_code = exit_code
        detail = "unknown status" if exit_code is None else f"exit code {exit_code}"
        super().__init__(f"Service {service} exited unexpectedly ({detail})")

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update(service=self.service, exit_code=self.exit_code)
        return payload


class BlockedDependency(OrchestratorError):
    """A service cannot launch because a dependency is not healthy."""

    kind = "blocked_dependency"

    def __init__(self, service: str, blockers: Iterable[str]):
        self.service = service
        self.blockers: List[str] = sorted(blockers)
        super().__init__(
            f"Service {service} is blocked by unhealthy dependencies: "
            f"{', '.join(self.blockers)}"
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update(service=self.service, blockers=list(self.blockers))
        return payload
