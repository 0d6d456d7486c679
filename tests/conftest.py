"""
Shared fakes for orchestrator tests: an in-memory runtime driver, a scripted
health prober and a dictionary-backed secret provider.
"""
import asyncio
import threading
from typing import Dict, Iterable, List, Optional

import pytest

from svcorch.MANAGERS.health_monitor import HealthProber, ProbeResult, ProbeStatus
from svcorch.MANAGERS.runtime_driver import InstanceHandle, InstanceStatus, RuntimeDriver
from svcorch.MANAGERS.secret_resolver import SecretNotFound, SecretProvider
from svcorch.MODELS.service_definition import HealthCheck, RestartPolicy, ServiceDefinition
from svcorch.errors import RuntimeDriverError
from svcorch.settings import OrchestratorSettings


class FakeDriver(RuntimeDriver):
    """Records every call; instances run until stopped or crashed."""

    def __init__(self, fail_launch: Iterable[str] = (), exit_on_launch: Optional[Dict[str, int]] = None):
        self.fail_launch = set(fail_launch)
        self.exit_on_launch = dict(exit_on_launch or {})
        self.launched: List[str] = []
        self.envs: Dict[str, Dict[str, str]] = {}
        self.stopped: List[str] = []
        self.handles: Dict[str, InstanceHandle] = {}
        self._status: Dict[str, InstanceStatus] = {}
        self._lock = threading.Lock()

    def launch(self, service_def: ServiceDefinition, env: Dict[str, str]) -> InstanceHandle:
        with self._lock:
            self.launched.append(service_def.name)
            self.envs[service_def.name] = dict(env)
            if service_def.name in self.fail_launch:
                raise RuntimeDriverError(service_def.name, "launch", "image not found")
            handle = InstanceHandle(
                service=service_def.name,
                instance_id=f"{service_def.name}-{self.launched.count(service_def.name)}",
            )
            self.handles[service_def.name] = handle
            if service_def.name in self.exit_on_launch:
                self._status[handle.instance_id] = InstanceStatus.exited(self.exit_on_launch[service_def.name])
            else:
                self._status[handle.instance_id] = InstanceStatus.running()
            return handle

    def stop(self, handle: InstanceHandle, timeout: float = 10.0) -> None:
        with self._lock:
            self.stopped.append(handle.service)
            self._status[handle.instance_id] = InstanceStatus.exited(0)

    def status(self, handle: InstanceHandle) -> InstanceStatus:
        with self._lock:
            return self._status.get(handle.instance_id, InstanceStatus.unknown())

    def crash(self, service: str, exit_code: int = 1) -> None:
        with self._lock:
            self._status[self.handles[service].instance_id] = InstanceStatus.exited(exit_code)

    def lose(self, service: str) -> None:
        """The runtime stops answering for the current instance of ``service``."""
        with self._lock:
            self._status[self.handles[service].instance_id] = InstanceStatus.unknown()

    def launch_count(self, service: str) -> int:
        return self.launched.count(service)


class ScriptedProber(HealthProber):
    """
    Answers probes by endpoint: "healthy", "unhealthy", "error", or an int N meaning
    the first N probes fail and later ones succeed.
    """

    def __init__(self, behaviours: Optional[Dict[str, object]] = None):
        super().__init__()
        self.behaviours = dict(behaviours or {})
        self.probed: List[str] = []

    async def probe(self, spec: HealthCheck, env=None) -> ProbeResult:
        name = spec.endpoint
        self.probed.append(name)
        behaviour = self.behaviours.get(name, "healthy")
        if isinstance(behaviour, int):
            if self.probed.count(name) > behaviour:
                return ProbeResult(ProbeStatus.HEALTHY)
            return ProbeResult(ProbeStatus.UNHEALTHY, "not ready")
        if behaviour == "error":
            raise RuntimeError("probe crashed")
        if behaviour == "healthy":
            return ProbeResult(ProbeStatus.HEALTHY)
        return ProbeResult(ProbeStatus.UNHEALTHY, "connection refused")


class DictSecretProvider(SecretProvider):
    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self.secrets = dict(secrets or {})
        self.calls: List[str] = []

    def get_secret(self, name: str) -> str:
        self.calls.append(name)
        try:
            return self.secrets[name]
        except KeyError:
            raise SecretNotFound(name) from None


def make_service(name, depends_on=(), restart="no", max_attempts=None, health=True, environment=None):
    """
    Builds a service whose health check is answered by ScriptedProber under its own name.
    """
    health_check = None
    if health:
        health_check = HealthCheck(endpoint=name, interval=0.01, timeout=0.5, retries=2)
    return ServiceDefinition(
        name=name,
        image=f"{name}:latest",
        command=["run", name],
        depends_on=frozenset(depends_on),
        restart_policy=RestartPolicy(condition=restart, max_attempts=max_attempts),
        health_check=health_check,
        environment=environment or {},
    )


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def fast_settings(tmp_path):
    return OrchestratorSettings(
        default_max_attempts=2,
        backoff_base=0.01,
        backoff_cap=0.05,
        launch_timeout=2.0,
        stop_timeout=1.0,
        status_timeout=1.0,
        secret_timeout=1.0,
        secret_retries=2,
        watch_interval=0.02,
        state_dir=tmp_path / ".svcorch",
    )


@pytest.fixture
def driver():
    return FakeDriver()
