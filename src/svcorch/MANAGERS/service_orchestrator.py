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
Orchestration for multiple services: dependency-ordered startup, health
gating, restart policies and ordered shutdown.

Per-service work (secret resolution, launch, health probing, status
watching) runs in asyncio tasks. Tasks never touch instance state: they
post messages to the control loop, which is the only writer.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

from .event_log import EventSink, LoggingEventSink
from .health_monitor import HealthOutcome, HealthProber
from .runtime_driver import InstanceHandle, InstanceState, InstanceStatus, RuntimeDriver
from .secret_resolver import EnvironmentSecretProvider, SecretProvider, SecretResolver
from .state_store import RunState, ServiceRecord, StateStore
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import RestartPolicyCondition
from ..MODELS.service_state import (
    RunResult,
    ServiceInstance,
    ServiceState,
    ServiceSummary,
    TransitionEvent,
    utc_now,
)
from ..RUNNERS.dependency_resolver import DependencyGraph
from ..errors import (
    BlockedDependency,
    HealthCheckTimeout,
    OrchestratorError,
    RuntimeDriverError,
    SecretUnavailableError,
    UnexpectedExit,
)
from ..settings import OrchestratorSettings

logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    """What a task reports back to the control loop."""

    LAUNCHED = "launched"
    HEALTHY = "healthy"
    FAILED = "failed"
    EXITED = "exited"
    RELAUNCH = "relaunch"
    STOP_REQUESTED = "stop_requested"
    STOPPED = "stopped"
    ORPHANED = "orphaned"
    CANCEL = "cancel"


@dataclass
class _Message:
    service: str
    kind: MessageKind
    attempt: int = 0
    handle: Optional[InstanceHandle] = None
    error: Optional[OrchestratorError] = None
    exit_code: Optional[int] = None
    lost: bool = False


_RUNNING_STATES = (ServiceState.LAUNCHING, ServiceState.AWAITING_HEALTH, ServiceState.HEALTHY)


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.
    """
    def __init__(
        self,
        config: OrchestrationConfig,
        driver: RuntimeDriver,
        secret_provider: Optional[SecretProvider] = None,
        prober: Optional[HealthProber] = None,
        settings: Optional[OrchestratorSettings] = None,
        sinks: Optional[Iterable[EventSink]] = None,
        state_store: Optional[StateStore] = None,
    ):
        """
        Initializes the orchestrator.

        :param config: Configuration for all services.
        :param driver: Runtime that launches, stops and inspects instances.
        :param secret_provider: Source of secrets; the process environment if omitted.
        :param prober: Health prober; a default one if omitted.
        :param settings: Orchestrator tunables.
        :param sinks: Consumers of transition events; a logging sink if omitted.
        :param state_store: Where run state is persisted, if anywhere.
        """
        self.config = config
        self.driver = driver
        self.settings = settings or OrchestratorSettings()
        self.secrets = SecretResolver(
            secret_provider or EnvironmentSecretProvider(),
            timeout=self.settings.secret_timeout,
            attempts=self.settings.secret_retries,
        )
        self.prober = prober or HealthProber()
        self.sinks: List[EventSink] = list(sinks) if sinks is not None else [LoggingEventSink()]
        self.state_store = state_store

        self.graph: Optional[DependencyGraph] = None
        self.instances: Dict[str, ServiceInstance] = {}
        self.events: List[TransitionEvent] = []

        self._inbox: Optional[asyncio.Queue] = None
        self._tasks: Dict[str, asyncio.Task] = {}
        self._watchers: Dict[str, asyncio.Task] = {}
        self._aux: Set[asyncio.Task] = set()
        self._inflight: Set[asyncio.Future] = set()
        self._stop_waiters: Dict[str, List[asyncio.Future]] = {}
        self._cancel_watchers: List[asyncio.Task] = []
        self._pumping = 0
        self._open_stages = 0
        self._cancelled = False
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def up(self, cancel_event: Optional[asyncio.Event] = None) -> RunResult:
        """
        Starts all services stage by stage and waits until every service has settled.

        A stage opens once every service of the earlier stages is healthy or has
        used up its startup budget.

        :param cancel_event: Setting it stops new launches and shuts everything down.
        :return: Per-service outcome of the startup.
        :raises ConfigError: If the dependency graph is invalid; nothing is launched.
        """
        self._prepare(cancel_event)
        logger.info(
            "Starting services in stages: %s",
            " -> ".join("{" + ", ".join(stage) + "}" for stage in self.graph.stages),
        )

        for number, stage in enumerate(self.graph.stages):
            if self._cancelled:
                break
            self._open_stages = number + 1
            for name in stage:
                self._schedule(self.instances[name])
            await self._pump(lambda stage=stage: all(self.instances[n].settled for n in stage))

        if self._cancelled:
            logger.info("Startup cancelled, shutting down")
            return await self.down()

        await self._pump(self._all_settled)
        return self.result()

    async def supervise(self, cancel_event: Optional[asyncio.Event] = None) -> None:
        """
        Keeps applying restart policies until the cancel event is set.
        """
        if cancel_event is not None:
            self._watch_cancel(cancel_event)
        await self._pump(lambda: self._cancelled)

    async def run(self, cancel_event: asyncio.Event, supervise: bool = True) -> RunResult:
        """
        Starts everything, optionally supervises until cancelled, then shuts down.
        """
        result = await self.up(cancel_event)
        if self._shutting_down:
            return result
        if supervise:
            await self.supervise()
        return await self.down()

    async def stop_service(self, name: str) -> ServiceSummary:
        """
        Stops one service on operator request.

        An unless-stopped service then stays stopped; an always service is
        relaunched anyway.

        :param name: The service to stop.
        :return: Summary of the service once it reached ``stopped``.
        """
        if name not in self.instances:
            raise KeyError(f"Unknown service: {name}")
        waiter = asyncio.get_running_loop().create_future()
        self._stop_waiters.setdefault(name, []).append(waiter)
        self._post(_Message(name, MessageKind.STOP_REQUESTED))
        if self._pumping:
            # A supervisor is already applying messages
            await waiter
        else:
            await self._pump(waiter.done)
        return self._summary(self.instances[name])

    async def down(self) -> RunResult:
        """
        Stops all services in reverse stage order.

        A stage is only signalled once every service of the later stages has stopped.

        :return: Per-service outcome of the shutdown.
        """
        if self.graph is None:
            return RunResult()
        self._shutting_down = True
        await self._quiesce()

        for stage in self.graph.shutdown_order():
            for name in stage:
                self._request_stop(self.instances[name], explicit=False)
            await self._pump(
                lambda stage=stage: all(self.instances[n].state == ServiceState.STOPPED for n in stage),
                stopping=True,
            )

        if self._aux:
            await asyncio.gather(*self._aux, return_exceptions=True)
        self.secrets.clear()
        if self.state_store is not None:
            self.state_store.clear()
        return self.result()

    async def detach(self) -> RunResult:
        """
        Leaves running instances alone and stops supervising them.

        The persisted state still lets a later ``down`` stop them.
        """
        self._shutting_down = True
        await self._quiesce()
        self.secrets.clear()
        self._persist()
        return self.result()

    def status(self) -> Dict[str, ServiceSummary]:
        """
        Returns the current state of every service.
        """
        return {name: self._summary(inst) for name, inst in sorted(self.instances.items())}

    def result(self) -> RunResult:
        return RunResult(services=self.status())

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def _prepare(self, cancel_event: Optional[asyncio.Event]) -> None:
        self.graph = DependencyGraph.build(self.config.services)
        self.instances = {name: ServiceInstance(name) for name in self.graph.order()}
        self._inbox = asyncio.Queue()
        self._cancelled = False
        self._shutting_down = False
        if cancel_event is not None:
            self._watch_cancel(cancel_event)
        self._persist()

    def _watch_cancel(self, cancel_event: asyncio.Event) -> None:
        async def wait_for_cancel():
            await cancel_event.wait()
            self._post(_Message("", MessageKind.CANCEL))
        self._cancel_watchers.append(asyncio.create_task(wait_for_cancel()))

    async def _pump(self, done: Callable[[], bool], stopping: bool = False) -> None:
        """
        Applies messages until ``done`` holds or the run is cancelled.
        """
        self._pumping += 1
        try:
            while not done():
                if self._cancelled and not stopping:
                    return
                message = await self._inbox.get()
                self._handle(message)
        finally:
            self._pumping -= 1

    def _drain(self) -> None:
        while not self._inbox.empty():
            self._handle(self._inbox.get_nowait())

    def _post(self, message: _Message) -> None:
        self._inbox.put_nowait(message)

    def _handle(self, message: _Message) -> None:
        if message.kind == MessageKind.CANCEL:
            self._cancelled = True
            return

        inst = self.instances[message.service]
        kind = message.kind

        if kind == MessageKind.ORPHANED:
            self._adopt_orphan(inst, message)
            return
        if kind == MessageKind.STOP_REQUESTED:
            self._request_stop(inst, explicit=True)
            return
        if kind == MessageKind.STOPPED:
            self._on_stopped(inst, message)
            return
        if self._shutting_down and kind != MessageKind.LAUNCHED:
            return
        if message.attempt != inst.launches:
            logger.debug("Ignoring stale %s message for %s", kind.value, inst.name)
            return

        if kind == MessageKind.LAUNCHED:
            inst.handle = message.handle
            if inst.state == ServiceState.LAUNCHING and self.config.services[inst.name].health_check:
                self._transition(inst, ServiceState.AWAITING_HEALTH)
        elif kind == MessageKind.HEALTHY:
            if inst.state in (ServiceState.LAUNCHING, ServiceState.AWAITING_HEALTH):
                self._on_healthy(inst)
        elif kind == MessageKind.FAILED:
            if inst.state in (ServiceState.LAUNCHING, ServiceState.AWAITING_HEALTH):
                self._on_failure(inst, message.error)
        elif kind == MessageKind.EXITED:
            if inst.state == ServiceState.HEALTHY:
                self._on_exit(inst, message.exit_code, message.lost)
        elif kind == MessageKind.RELAUNCH:
            if not self._shutting_down and inst.state in (ServiceState.DEGRADED, ServiceState.STOPPED):
                self._schedule(inst)

    def _schedule(self, inst: ServiceInstance) -> None:
        """
        Launches a service if all of its dependencies are healthy, else marks it blocked.
        """
        if inst.launches == 0:
            inst.settled = False
        blockers = sorted(
            dep for dep in self.graph.dependencies_of(inst.name)
            if self.instances[dep].state != ServiceState.HEALTHY
        )
        if blockers:
            inst.settled = True
            if inst.state != ServiceState.BLOCKED:
                self._transition(inst, ServiceState.BLOCKED, BlockedDependency(inst.name, blockers))
            return
        if inst.state == ServiceState.BLOCKED:
            self._transition(inst, ServiceState.PENDING)

        self._transition(inst, ServiceState.LAUNCHING)
        inst.launches += 1
        inst.handle = None
        inst.explicitly_stopped = False
        self._tasks[inst.name] = asyncio.create_task(
            self._launch_attempt(inst.name, inst.launches), name=f"launch-{inst.name}"
        )

    def _on_healthy(self, inst: ServiceInstance) -> None:
        self._transition(inst, ServiceState.HEALTHY)
        inst.settled = True
        inst.failures = 0
        inst.last_error = None
        self._watchers[inst.name] = asyncio.create_task(
            self._watch(inst.name, inst.launches, inst.handle), name=f"watch-{inst.name}"
        )
        for dependent in sorted(self.graph.dependents_of(inst.name)):
            other = self.instances[dependent]
            if other.state == ServiceState.BLOCKED and self.graph.stage_of(dependent) < self._open_stages:
                self._schedule(other)

    def _on_failure(self, inst: ServiceInstance, error: OrchestratorError) -> None:
        if inst.handle is not None:
            # Launched but never healthy: get rid of it before any relaunch
            self._spawn_aux(self._stop_handle(inst.name, inst.handle))
            inst.handle = None
        self._transition(inst, ServiceState.DEGRADED, error)
        self._apply_restart_policy(inst, error)

    def _on_exit(self, inst: ServiceInstance, exit_code: Optional[int], lost: bool = False) -> None:
        self._cancel_watcher(inst.name)
        if lost and inst.handle is not None:
            # The runtime lost track of it; make sure it is gone before any relaunch
            self._spawn_aux(self._stop_handle(inst.name, inst.handle))
        inst.handle = None
        condition = self.config.services[inst.name].restart_policy.condition
        clean = exit_code == 0 and condition in (RestartPolicyCondition.NO, RestartPolicyCondition.ON_FAILURE)
        if clean:
            logger.info("Service %s completed", inst.name)
            self._transition(inst, ServiceState.STOPPED)
            return
        error = UnexpectedExit(inst.name, exit_code)
        self._transition(inst, ServiceState.DEGRADED, error)
        self._apply_restart_policy(inst, error)

    def _apply_restart_policy(self, inst: ServiceInstance, error: OrchestratorError) -> None:
        policy = self.config.services[inst.name].restart_policy
        inst.failures += 1

        if isinstance(error, SecretUnavailableError) or policy.condition == RestartPolicyCondition.NO:
            inst.settled = True
            return

        if policy.condition == RestartPolicyCondition.ON_FAILURE:
            ceiling = policy.max_attempts
            if ceiling is None:
                ceiling = self.settings.default_max_attempts
            if inst.restarts >= ceiling:
                logger.warning("Service %s exceeded max restart attempts (%d)", inst.name, ceiling)
                inst.settled = True
                return
            inst.settled = False
        else:
            # always / unless-stopped keep retrying in the background
            inst.settled = True
        self._schedule_relaunch(inst)

    def _schedule_relaunch(self, inst: ServiceInstance) -> None:
        delay = self._backoff(inst)
        inst.restarts += 1
        logger.info("Relaunching %s in %.1fs (restart %d)", inst.name, delay, inst.restarts)
        self._tasks[inst.name] = asyncio.create_task(
            self._relaunch_after(inst.name, inst.launches, delay), name=f"relaunch-{inst.name}"
        )

    def _backoff(self, inst: ServiceInstance) -> float:
        policy = self.config.services[inst.name].restart_policy
        base = policy.delay if policy.delay > 0 else self.settings.backoff_base
        exponent = max(inst.failures - 1, 0)
        return min(base * (2 ** exponent), self.settings.backoff_cap)

    def _request_stop(self, inst: ServiceInstance, explicit: bool) -> None:
        if explicit:
            inst.explicitly_stopped = True
        self._cancel_task(inst.name)
        self._cancel_watcher(inst.name)

        if inst.state == ServiceState.STOPPING:
            return
        if inst.state == ServiceState.STOPPED:
            self._resolve_stop_waiters(inst.name)
            return
        if inst.handle is not None and inst.state in _RUNNING_STATES + (ServiceState.DEGRADED,):
            self._transition(inst, ServiceState.STOPPING)
            self._spawn_aux(self._stop_attempt(inst.name, inst.launches, inst.handle))
            return
        self._transition(inst, ServiceState.STOPPED)
        self._after_stop(inst)

    def _on_stopped(self, inst: ServiceInstance, message: _Message) -> None:
        if inst.state != ServiceState.STOPPING or message.attempt != inst.launches:
            return
        inst.handle = None
        self._transition(inst, ServiceState.STOPPED, message.error)
        self._after_stop(inst)

    def _after_stop(self, inst: ServiceInstance) -> None:
        inst.settled = True
        self._resolve_stop_waiters(inst.name)
        condition = self.config.services[inst.name].restart_policy.condition
        if inst.explicitly_stopped and condition == RestartPolicyCondition.ALWAYS and not self._shutting_down:
            logger.info("Service %s has restart policy 'always', relaunching after stop", inst.name)
            self._schedule_relaunch(inst)

    def _adopt_orphan(self, inst: ServiceInstance, message: _Message) -> None:
        """
        A launch finished after its task was cancelled. Keep the handle if the
        instance still waits for it, otherwise stop it.
        """
        if (message.attempt == inst.launches and inst.handle is None
                and inst.state == ServiceState.LAUNCHING):
            inst.handle = message.handle
            return
        self._spawn_aux(self._stop_handle(inst.name, message.handle))

    async def _quiesce(self) -> None:
        """
        Cancels per-service tasks and waits for launches already in flight.
        """
        tasks = list(self._tasks.values()) + list(self._watchers.values()) + self._cancel_watchers
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._watchers.clear()
        self._cancel_watchers.clear()
        if self._inflight:
            await asyncio.wait(list(self._inflight), timeout=self.settings.launch_timeout)
        # Give done-callbacks a chance to post their orphan messages
        await asyncio.sleep(0)
        self._drain()

    def _transition(self, inst: ServiceInstance, new_state: ServiceState,
                    error: Optional[OrchestratorError] = None) -> None:
        if not inst.can_transition(new_state):
            raise RuntimeError(
                f"Invalid transition for {inst.name}: {inst.state.value} -> {new_state.value}"
            )
        payload = error.to_payload() if error is not None else None
        if payload is not None:
            inst.last_error = payload
        event = TransitionEvent(inst.name, inst.state, new_state, utc_now(), payload)
        inst.state = new_state
        self.events.append(event)
        for sink in self.sinks:
            sink.emit(event)
        self._persist()

    def _persist(self) -> None:
        if self.state_store is None or self.graph is None:
            return
        state = RunState(
            stages=[list(stage) for stage in self.graph.stages],
            services={
                name: ServiceRecord(state=inst.state, handle=inst.handle,
                                    restarts=inst.restarts, last_error=inst.last_error)
                for name, inst in self.instances.items()
            },
        )
        self.state_store.save(state)

    def _all_settled(self) -> bool:
        return all(inst.settled for inst in self.instances.values())

    def _summary(self, inst: ServiceInstance) -> ServiceSummary:
        return ServiceSummary(inst.name, inst.state, inst.restarts, inst.last_error)

    def _resolve_stop_waiters(self, name: str) -> None:
        for waiter in self._stop_waiters.pop(name, []):
            if not waiter.done():
                waiter.set_result(None)

    def _cancel_task(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None and not task.done():
            task.cancel()

    def _cancel_watcher(self, name: str) -> None:
        task = self._watchers.pop(name, None)
        if task is not None and not task.done():
            task.cancel()

    def _spawn_aux(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._aux.add(task)
        task.add_done_callback(self._aux.discard)

    # ------------------------------------------------------------------
    # Per-service tasks: report through messages only
    # ------------------------------------------------------------------

    async def _launch_attempt(self, name: str, attempt: int) -> None:
        """
        Launches and probes one attempt. Always ends with a message unless cancelled.
        """
        try:
            await self._launch_and_probe(name, attempt)
        except Exception as e:
            logger.exception("Launch of %s failed unexpectedly", name)
            error = RuntimeDriverError(name, "launch", f"{type(e).__name__}: {e}")
            self._post(_Message(name, MessageKind.FAILED, attempt, error=error))

    async def _launch_and_probe(self, name: str, attempt: int) -> None:
        service_def = self.config.services[name]
        try:
            env = await self.secrets.resolve_environment(service_def)
        except SecretUnavailableError as e:
            self._post(_Message(name, MessageKind.FAILED, attempt, error=e))
            return

        launch = asyncio.ensure_future(
            self._call_driver(name, "launch", self.driver.launch, service_def, env,
                              timeout=self.settings.launch_timeout)
        )
        self._inflight.add(launch)
        launch.add_done_callback(self._inflight.discard)
        try:
            handle = await asyncio.shield(launch)
        except asyncio.CancelledError:
            launch.add_done_callback(lambda f: self._post_orphan(name, attempt, f))
            raise
        except RuntimeDriverError as e:
            self._post(_Message(name, MessageKind.FAILED, attempt, error=e))
            return
        self._post(_Message(name, MessageKind.LAUNCHED, attempt, handle=handle))

        async def is_alive() -> bool:
            return (await self._status(name, handle)).state != InstanceState.EXITED

        check = service_def.health_check
        if check is None:
            status = await self._status(name, handle)
            if status.state == InstanceState.EXITED:
                self._post(_Message(name, MessageKind.FAILED, attempt,
                                    error=UnexpectedExit(name, status.exit_code)))
            else:
                self._post(_Message(name, MessageKind.HEALTHY, attempt))
            return

        report = await self.prober.wait_until_healthy(check, {**os.environ, **env}, is_alive)
        if report.outcome == HealthOutcome.HEALTHY:
            self._post(_Message(name, MessageKind.HEALTHY, attempt))
        elif report.outcome == HealthOutcome.EXITED:
            status = await self._status(name, handle)
            self._post(_Message(name, MessageKind.FAILED, attempt,
                                error=UnexpectedExit(name, status.exit_code)))
        else:
            self._post(_Message(name, MessageKind.FAILED, attempt,
                                error=HealthCheckTimeout(name, report.attempts, report.last_output)))

    def _post_orphan(self, name: str, attempt: int, launch: asyncio.Future) -> None:
        if launch.cancelled() or launch.exception() is not None:
            return
        self._post(_Message(name, MessageKind.ORPHANED, attempt, handle=launch.result()))

    async def _relaunch_after(self, name: str, attempt: int, delay: float) -> None:
        await asyncio.sleep(delay)
        self._post(_Message(name, MessageKind.RELAUNCH, attempt))

    async def _watch(self, name: str, attempt: int, handle: InstanceHandle) -> None:
        unknown = 0
        while True:
            await asyncio.sleep(self.settings.watch_interval)
            status = await self._status(name, handle)
            if status.state == InstanceState.EXITED:
                self._post(_Message(name, MessageKind.EXITED, attempt, exit_code=status.exit_code))
                return
            if status.state != InstanceState.UNKNOWN:
                unknown = 0
                continue
            unknown += 1
            if unknown >= self.settings.unknown_status_limit:
                logger.warning("Service %s status unknown %d times in a row", name, unknown)
                self._post(_Message(name, MessageKind.EXITED, attempt, lost=True))
                return

    async def _stop_attempt(self, name: str, attempt: int, handle: InstanceHandle) -> None:
        error = await self._stop_handle(name, handle)
        self._post(_Message(name, MessageKind.STOPPED, attempt, error=error))

    async def _stop_handle(self, name: str, handle: InstanceHandle) -> Optional[RuntimeDriverError]:
        try:
            await self._call_driver(name, "stop", self.driver.stop, handle, self.settings.stop_timeout,
                                    timeout=self.settings.stop_timeout * 2)
        except RuntimeDriverError as e:
            logger.error("%s", e)
            return e
        return None

    async def _status(self, name: str, handle: InstanceHandle) -> InstanceStatus:
        try:
            return await self._call_driver(name, "status", self.driver.status, handle,
                                           timeout=self.settings.status_timeout)
        except RuntimeDriverError as e:
            logger.warning("%s", e)
            return InstanceStatus.unknown()

    async def _call_driver(self, name: str, operation: str, func, *args, timeout: float):
        """
        Runs a blocking driver call off the event loop, bounded by ``timeout``.
        """
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
        except asyncio.TimeoutError:
            raise RuntimeDriverError(name, operation, f"no acknowledgement within {timeout}s") from None
        except RuntimeDriverError:
            raise
        except Exception as e:
            raise RuntimeDriverError(name, operation, f"{type(e).__name__}: {e}") from e


async def stop_persisted(
    state: RunState,
    driver: RuntimeDriver,
    settings: Optional[OrchestratorSettings] = None,
    sinks: Optional[Iterable[EventSink]] = None,
) -> RunResult:
    """
    Stops the instances of a persisted run in reverse stage order.

    :param state: The persisted run.
    :param driver: Driver able to stop the persisted handles.
    :param settings: Orchestrator tunables.
    :param sinks: Consumers of transition events.
    :return: Per-service outcome.
    """
    settings = settings or OrchestratorSettings()
    sinks = list(sinks) if sinks is not None else [LoggingEventSink()]
    summaries: Dict[str, ServiceSummary] = {}

    def emit(name: str, old: ServiceState, new: ServiceState, error=None) -> None:
        event = TransitionEvent(name, old, new, utc_now(), error)
        for sink in sinks:
            sink.emit(event)

    async def stop_one(name: str, record: ServiceRecord) -> None:
        error = None
        if record.handle is not None and record.state != ServiceState.STOPPED:
            emit(name, record.state, ServiceState.STOPPING)
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(driver.stop, record.handle, settings.stop_timeout),
                    timeout=settings.stop_timeout * 2,
                )
            except asyncio.TimeoutError:
                error = RuntimeDriverError(name, "stop", "no acknowledgement").to_payload()
            except RuntimeDriverError as e:
                error = e.to_payload()
            emit(name, ServiceState.STOPPING, ServiceState.STOPPED, error)
        elif record.state != ServiceState.STOPPED:
            emit(name, record.state, ServiceState.STOPPED)
        summaries[name] = ServiceSummary(name, ServiceState.STOPPED, record.restarts, error)

    for stage in reversed(state.stages):
        await asyncio.gather(*(
            stop_one(name, state.services[name]) for name in stage if name in state.services
        ))
    return RunResult(services=dict(sorted(summaries.items())))


async def inspect_persisted(
    state: RunState,
    driver: RuntimeDriver,
    settings: Optional[OrchestratorSettings] = None,
) -> Dict[str, str]:
    """
    Reports recorded state and live driver status of every persisted service.

    :return: Service name to a display string such as ``healthy (running)``.
    """
    settings = settings or OrchestratorSettings()
    report: Dict[str, str] = {}
    for stage in state.stages:
        for name in stage:
            record = state.services.get(name)
            if record is None:
                continue
            if record.handle is None:
                report[name] = record.state.value
                continue
            try:
                status = await asyncio.wait_for(
                    asyncio.to_thread(driver.status, record.handle), timeout=settings.status_timeout
                )
            except (asyncio.TimeoutError, RuntimeDriverError):
                status = InstanceStatus.unknown()
            report[name] = f"{record.state.value} ({status})"
    return report
