import asyncio
import json
import threading

import pytest

from conftest import DictSecretProvider, FakeDriver, ScriptedProber, make_service, run
from svcorch.MANAGERS.event_log import JsonLinesEventSink, MemoryEventSink
from svcorch.MANAGERS.secret_resolver import SecretNotFound, SecretProvider
from svcorch.MANAGERS.service_orchestrator import ServiceOrchestrator, inspect_persisted, stop_persisted
from svcorch.MANAGERS.state_store import StateStore
from svcorch.MODELS.orchestration_config import OrchestrationConfig
from svcorch.MODELS.service_definition import SecretRef
from svcorch.MODELS.service_state import ExitCode, ServiceState
from svcorch.errors import CycleError


def _stack(proxy_restart="no", proxy_env=None):
    return [
        make_service("mongo", restart="unless-stopped"),
        make_service("cache", restart="always"),
        make_service("proxy", restart=proxy_restart, environment=proxy_env),
        make_service("app", depends_on=("mongo", "cache", "proxy")),
    ]


def _orchestrator(services, driver, settings, prober=None, secrets=None, **kwargs):
    return ServiceOrchestrator(
        OrchestrationConfig.from_definitions(services),
        driver,
        secret_provider=kwargs.pop("secret_provider", None) or DictSecretProvider(secrets),
        prober=prober or ScriptedProber(),
        settings=settings,
        sinks=kwargs.pop("sinks", []),
        **kwargs,
    )


async def _wait_until(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def _supervised(orchestrator, scenario):
    """
    Runs ``scenario`` while a supervisor applies restart policies, then shuts down.
    """
    cancel = asyncio.Event()
    supervisor = asyncio.create_task(orchestrator.supervise(cancel))
    await asyncio.sleep(0)
    try:
        await scenario()
    finally:
        cancel.set()
        await supervisor
    return await orchestrator.down()


def test_dependent_launches_after_all_dependencies_healthy(driver, fast_settings):
    orchestrator = _orchestrator(_stack(), driver, fast_settings)

    async def scenario():
        result = await orchestrator.up()
        await orchestrator.down()
        return result

    result = run(scenario())
    assert result.exit_code == ExitCode.OK
    assert all(s.state == ServiceState.HEALTHY for s in result.services.values())
    assert set(driver.launched[:3]) == {"mongo", "cache", "proxy"}
    assert driver.launched[3] == "app"


def test_dependent_never_launches_before_dependency_is_healthy(driver, fast_settings):
    sink = MemoryEventSink()
    # proxy needs three probes before it reports healthy
    prober = ScriptedProber({"proxy": 2})
    services = _stack()
    services[2] = make_service("proxy", restart="on-failure", max_attempts=3)
    orchestrator = _orchestrator(services, driver, fast_settings, prober=prober, sinks=[sink])

    async def scenario():
        result = await orchestrator.up()
        await orchestrator.down()
        return result

    result = run(scenario())
    assert result.services["app"].state == ServiceState.HEALTHY
    healthy_at = {}
    launching_at = {}
    for index, event in enumerate(sink.events):
        if event.new_state == ServiceState.HEALTHY:
            healthy_at.setdefault(event.service, index)
        if event.new_state == ServiceState.LAUNCHING:
            launching_at.setdefault(event.service, index)
    for dep in ("mongo", "cache", "proxy"):
        assert healthy_at[dep] < launching_at["app"]


def test_cycle_aborts_before_any_launch(driver, fast_settings):
    services = [make_service("a", depends_on=("b",)), make_service("b", depends_on=("a",))]
    orchestrator = _orchestrator(services, driver, fast_settings)

    with pytest.raises(CycleError) as exc:
        run(orchestrator.up())
    assert exc.value.participants == ["a", "b"]
    assert driver.launched == []


def test_never_policy_degrades_once_and_blocks_dependents(driver, fast_settings):
    prober = ScriptedProber({"proxy": "unhealthy"})
    orchestrator = _orchestrator(_stack(), driver, fast_settings, prober=prober)

    async def scenario():
        result = await orchestrator.up()
        await orchestrator.down()
        return result

    result = run(scenario())
    proxy = result.services["proxy"]
    assert proxy.state == ServiceState.DEGRADED
    assert proxy.error["kind"] == "health_check_timeout"
    assert result.services["app"].state == ServiceState.BLOCKED
    assert result.services["app"].error["blockers"] == ["proxy"]
    assert result.services["mongo"].state == ServiceState.HEALTHY
    assert driver.launch_count("proxy") == 1
    assert driver.launch_count("app") == 0
    assert result.exit_code == ExitCode.PARTIAL
    assert result.failed() == ["app", "proxy"]
    # the unhealthy instance is not left running
    assert "proxy" in driver.stopped


def test_on_failure_ceiling_counts_relaunches(driver, fast_settings):
    prober = ScriptedProber({"worker": "unhealthy"})
    services = [make_service("worker", restart="on-failure", max_attempts=2)]
    orchestrator = _orchestrator(services, driver, fast_settings, prober=prober)

    async def scenario():
        result = await orchestrator.up()
        await orchestrator.down()
        return result

    result = run(scenario())
    assert driver.launch_count("worker") == 3
    assert result.services["worker"].restarts == 2
    assert result.services["worker"].state == ServiceState.DEGRADED


def test_on_failure_default_ceiling_from_settings(driver, fast_settings):
    prober = ScriptedProber({"worker": "unhealthy"})
    orchestrator = _orchestrator([make_service("worker", restart="on-failure")], driver,
                                 fast_settings, prober=prober)

    async def scenario():
        await orchestrator.up()
        await orchestrator.down()

    run(scenario())
    assert driver.launch_count("worker") == fast_settings.default_max_attempts + 1


def test_always_keeps_relaunching_in_background(driver, fast_settings):
    prober = ScriptedProber({"flaky": "unhealthy"})
    orchestrator = _orchestrator([make_service("flaky", restart="always")], driver,
                                 fast_settings, prober=prober)

    async def scenario():
        startup = await orchestrator.up()
        assert startup.services["flaky"].state in (ServiceState.DEGRADED, ServiceState.LAUNCHING,
                                                   ServiceState.AWAITING_HEALTH)

        async def keep_failing():
            await _wait_until(lambda: driver.launch_count("flaky") >= 4)

        return await _supervised(orchestrator, keep_failing)

    result = run(scenario())
    assert driver.launch_count("flaky") >= 4
    assert result.services["flaky"].state == ServiceState.STOPPED


def test_blocked_dependent_launches_once_dependency_recovers(driver, fast_settings):
    # First launch of db fails both probes, the relaunch succeeds
    prober = ScriptedProber({"db": 2})
    services = [make_service("db", restart="always"), make_service("web", depends_on=("db",))]
    orchestrator = _orchestrator(services, driver, fast_settings, prober=prober)

    async def scenario():
        await orchestrator.up()

        async def recover():
            await _wait_until(lambda: orchestrator.instances["web"].state == ServiceState.HEALTHY)

        return await _supervised(orchestrator, recover)

    run(scenario())
    assert driver.launch_count("db") == 2
    assert driver.launch_count("web") == 1


def test_missing_secret_degrades_only_that_service(driver, fast_settings):
    services = _stack(proxy_restart="always", proxy_env={"GH_TOKEN": SecretRef(name="GH_TOKEN")})
    orchestrator = _orchestrator(services, driver, fast_settings)

    async def scenario():
        result = await orchestrator.up()
        await orchestrator.down()
        return result

    result = run(scenario())
    proxy = result.services["proxy"]
    assert proxy.state == ServiceState.DEGRADED
    assert proxy.error["kind"] == "secret_unavailable"
    assert proxy.error["secret_name"] == "GH_TOKEN"
    assert "proxy" not in driver.launched
    assert {"mongo", "cache"} <= set(driver.launched)
    assert result.services["app"].state == ServiceState.BLOCKED
    assert result.exit_code == ExitCode.LAUNCH_FAILURE


class BrokenSecretBackend(SecretProvider):
    """Fails with a client error of its own."""

    def get_secret(self, name):
        raise RuntimeError("backend 500")


class StalledSecretBackend(SecretProvider):
    """Hangs until released."""

    def __init__(self):
        self.release = threading.Event()

    def get_secret(self, name):
        self.release.wait(5)
        raise SecretNotFound(name)


def test_unexpected_provider_error_degrades_only_that_service(driver, fast_settings):
    services = _stack(proxy_env={"GH_TOKEN": SecretRef(name="GH_TOKEN")})
    orchestrator = _orchestrator(services, driver, fast_settings, secret_provider=BrokenSecretBackend())

    async def scenario():
        result = await asyncio.wait_for(orchestrator.up(), timeout=3)
        await orchestrator.down()
        return result

    result = run(scenario())
    proxy = result.services["proxy"]
    assert proxy.state == ServiceState.DEGRADED
    assert proxy.error["kind"] == "secret_unavailable"
    assert proxy.error["secret_name"] == "GH_TOKEN"
    assert "backend 500" in proxy.error["message"]
    assert "proxy" not in driver.launched
    assert result.services["mongo"].state == ServiceState.HEALTHY
    assert result.services["cache"].state == ServiceState.HEALTHY
    assert result.services["app"].state == ServiceState.BLOCKED
    assert result.exit_code == ExitCode.LAUNCH_FAILURE


def test_stalled_provider_is_bounded_by_secret_timeout(driver, fast_settings):
    provider = StalledSecretBackend()
    settings = fast_settings.model_copy(update={"secret_timeout": 0.2})
    services = _stack(proxy_env={"GH_TOKEN": SecretRef(name="GH_TOKEN")})
    orchestrator = _orchestrator(services, driver, settings, secret_provider=provider)

    async def scenario():
        try:
            return await asyncio.wait_for(orchestrator.up(), timeout=3)
        finally:
            provider.release.set()
            await orchestrator.down()

    result = run(scenario())
    proxy = result.services["proxy"]
    assert proxy.state == ServiceState.DEGRADED
    assert proxy.error["kind"] == "secret_unavailable"
    assert "timed out" in proxy.error["message"]
    assert result.services["mongo"].state == ServiceState.HEALTHY
    assert result.services["cache"].state == ServiceState.HEALTHY


def test_crashing_probe_degrades_instead_of_hanging(driver, fast_settings):
    orchestrator = _orchestrator(_stack(), driver, fast_settings, prober=ScriptedProber({"proxy": "error"}))

    async def scenario():
        result = await asyncio.wait_for(orchestrator.up(), timeout=3)
        await orchestrator.down()
        return result

    result = run(scenario())
    proxy = result.services["proxy"]
    assert proxy.state == ServiceState.DEGRADED
    assert "probe crashed" in proxy.error["message"]
    # launched, then removed because it never became healthy
    assert driver.launch_count("proxy") == 1
    assert "proxy" in driver.stopped
    assert result.services["app"].state == ServiceState.BLOCKED


def test_secret_values_reach_the_driver_only(driver, fast_settings, tmp_path):
    events_file = tmp_path / "events.jsonl"
    store = StateStore(tmp_path / "state")
    services = _stack(proxy_env={"GH_TOKEN": SecretRef(name="GH_TOKEN"), "MODE": "fast"})
    orchestrator = _orchestrator(
        services, driver, fast_settings,
        secrets={"GH_TOKEN": "ghp_supersecret"},
        sinks=[JsonLinesEventSink(str(events_file))],
        state_store=store,
    )

    async def scenario():
        result = await orchestrator.up()
        persisted = store.path.read_text()
        await orchestrator.down()
        return result, persisted

    result, persisted = run(scenario())
    assert result.ok
    assert driver.envs["proxy"] == {"GH_TOKEN": "ghp_supersecret", "MODE": "fast"}
    assert "ghp_supersecret" not in persisted
    assert "ghp_supersecret" not in events_file.read_text()
    assert len(orchestrator.secrets) == 0


def test_driver_launch_failure_is_launch_failure(fast_settings):
    driver = FakeDriver(fail_launch={"proxy"})
    orchestrator = _orchestrator(_stack(), driver, fast_settings)

    async def scenario():
        result = await orchestrator.up()
        await orchestrator.down()
        return result

    result = run(scenario())
    proxy = result.services["proxy"]
    assert proxy.state == ServiceState.DEGRADED
    assert proxy.error["kind"] == "runtime_driver_error"
    assert proxy.error["operation"] == "launch"
    assert driver.launch_count("proxy") == 1
    assert result.services["app"].state == ServiceState.BLOCKED
    assert result.exit_code == ExitCode.LAUNCH_FAILURE


def test_exit_on_launch_without_health_check(fast_settings):
    driver = FakeDriver(exit_on_launch={"job": 3})
    services = [make_service("job", health=False)]
    orchestrator = _orchestrator(services, driver, fast_settings)

    async def scenario():
        result = await orchestrator.up()
        await orchestrator.down()
        return result

    result = run(scenario())
    assert result.services["job"].error["kind"] == "unexpected_exit"
    assert result.services["job"].error["exit_code"] == 3
    assert result.exit_code == ExitCode.PARTIAL


def test_shutdown_runs_in_reverse_stage_order(driver, fast_settings):
    sink = MemoryEventSink()
    orchestrator = _orchestrator(_stack(), driver, fast_settings, sinks=[sink])

    async def scenario():
        await orchestrator.up()
        return await orchestrator.down()

    result = run(scenario())
    assert driver.stopped[0] == "app"
    assert set(driver.stopped[1:]) == {"mongo", "cache", "proxy"}
    assert all(s.state == ServiceState.STOPPED for s in result.services.values())
    assert result.exit_code == ExitCode.OK

    app_stopped = next(i for i, e in enumerate(sink.events)
                       if e.service == "app" and e.new_state == ServiceState.STOPPED)
    first_dep_stopping = min(i for i, e in enumerate(sink.events)
                             if e.service != "app" and e.new_state == ServiceState.STOPPING)
    assert app_stopped < first_dep_stopping


def test_cancellation_before_startup_stops_everything(driver, fast_settings):
    orchestrator = _orchestrator(_stack(), driver, fast_settings)

    async def scenario():
        cancel = asyncio.Event()
        cancel.set()
        return await orchestrator.up(cancel)

    result = run(scenario())
    assert "app" not in driver.launched
    assert all(s.state == ServiceState.STOPPED for s in result.services.values())
    # every instance that did get launched was stopped again
    for name in driver.launched:
        assert name in driver.stopped


def test_cancellation_during_health_wait(driver, fast_settings):
    # proxy keeps failing, so app is never reached before the cancel
    prober = ScriptedProber({"proxy": 1000})
    services = _stack()
    services[2] = make_service("proxy", restart="on-failure", max_attempts=1000)
    orchestrator = _orchestrator(services, driver, fast_settings, prober=prober)

    async def scenario():
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.2, cancel.set)
        return await orchestrator.run(cancel)

    result = run(scenario())
    assert "app" not in driver.launched
    assert all(s.state == ServiceState.STOPPED for s in result.services.values())
    assert driver.launch_count("proxy") >= 2


def test_stop_service_respects_unless_stopped_but_not_always(driver, fast_settings):
    services = [make_service("keeper", restart="always"), make_service("quitter", restart="unless-stopped")]
    orchestrator = _orchestrator(services, driver, fast_settings)

    async def scenario():
        await orchestrator.up()

        async def stop_both():
            summary = await orchestrator.stop_service("quitter")
            assert summary.state == ServiceState.STOPPED
            summary = await orchestrator.stop_service("keeper")
            assert summary.state == ServiceState.STOPPED
            await _wait_until(lambda: orchestrator.instances["keeper"].state == ServiceState.HEALTHY)
            # quitter must stay down
            await asyncio.sleep(0.1)
            assert orchestrator.instances["quitter"].state == ServiceState.STOPPED

        return await _supervised(orchestrator, stop_both)

    run(scenario())
    assert driver.launch_count("keeper") == 2
    assert driver.launch_count("quitter") == 1


def test_stop_service_unknown_name(driver, fast_settings):
    orchestrator = _orchestrator([make_service("a")], driver, fast_settings)

    async def scenario():
        await orchestrator.up()
        try:
            with pytest.raises(KeyError):
                await orchestrator.stop_service("ghost")
        finally:
            await orchestrator.down()

    run(scenario())


def test_crash_after_healthy_is_restarted(driver, fast_settings):
    sink = MemoryEventSink()
    services = [make_service("worker", restart="on-failure", max_attempts=3)]
    orchestrator = _orchestrator(services, driver, fast_settings, sinks=[sink])

    async def scenario():
        await orchestrator.up()

        async def crash():
            driver.crash("worker", 137)
            await _wait_until(lambda: driver.launch_count("worker") == 2
                              and orchestrator.instances["worker"].state == ServiceState.HEALTHY)

        return await _supervised(orchestrator, crash)

    result = run(scenario())
    assert result.services["worker"].restarts == 1
    assert sink.transitions("worker")[:6] == [
        ServiceState.LAUNCHING,
        ServiceState.AWAITING_HEALTH,
        ServiceState.HEALTHY,
        ServiceState.DEGRADED,
        ServiceState.LAUNCHING,
        ServiceState.AWAITING_HEALTH,
    ]
    degraded = [e for e in sink.events if e.new_state == ServiceState.DEGRADED]
    assert degraded[0].error["kind"] == "unexpected_exit"
    assert degraded[0].error["exit_code"] == 137


def test_unknown_status_after_healthy_counts_as_exit(driver, fast_settings):
    sink = MemoryEventSink()
    services = [make_service("cache", restart="always")]
    orchestrator = _orchestrator(services, driver, fast_settings, sinks=[sink])

    async def scenario():
        await orchestrator.up()

        async def lose():
            driver.lose("cache")
            await _wait_until(lambda: driver.launch_count("cache") == 2
                              and orchestrator.instances["cache"].state == ServiceState.HEALTHY)

        return await _supervised(orchestrator, lose)

    result = run(scenario())
    assert result.services["cache"].restarts == 1
    degraded = [e for e in sink.events if e.new_state == ServiceState.DEGRADED]
    assert degraded[0].error["kind"] == "unexpected_exit"
    assert degraded[0].error["exit_code"] is None
    # the lost instance is stopped before its replacement, the replacement on down
    assert driver.stopped.count("cache") == 2


def test_unknown_status_below_limit_is_tolerated(driver, fast_settings):
    settings = fast_settings.model_copy(update={"unknown_status_limit": 1000})
    services = [make_service("cache", restart="always")]
    orchestrator = _orchestrator(services, driver, settings)

    async def scenario():
        await orchestrator.up()

        async def lose():
            driver.lose("cache")
            await asyncio.sleep(0.2)
            assert orchestrator.instances["cache"].state == ServiceState.HEALTHY

        return await _supervised(orchestrator, lose)

    run(scenario())
    assert driver.launch_count("cache") == 1


def test_clean_exit_is_not_restarted(driver, fast_settings):
    services = [make_service("task", restart="on-failure", max_attempts=3)]
    orchestrator = _orchestrator(services, driver, fast_settings)

    async def scenario():
        await orchestrator.up()

        async def finish():
            driver.crash("task", 0)
            await _wait_until(lambda: orchestrator.instances["task"].state == ServiceState.STOPPED)
            await asyncio.sleep(0.1)

        return await _supervised(orchestrator, finish)

    result = run(scenario())
    assert driver.launch_count("task") == 1
    assert result.services["task"].restarts == 0


def test_every_transition_is_recorded(driver, fast_settings):
    sink = MemoryEventSink()
    orchestrator = _orchestrator(_stack(), driver, fast_settings, sinks=[sink])

    async def scenario():
        await orchestrator.up()
        await orchestrator.down()

    run(scenario())
    assert sink.events == orchestrator.events
    assert sink.transitions("app") == [
        ServiceState.LAUNCHING,
        ServiceState.AWAITING_HEALTH,
        ServiceState.HEALTHY,
        ServiceState.STOPPING,
        ServiceState.STOPPED,
    ]
    for event in sink.events:
        assert event.old_state != event.new_state


def test_detach_persists_handles_for_later_down(driver, fast_settings, tmp_path):
    store = StateStore(tmp_path / "state")
    orchestrator = _orchestrator(_stack(), driver, fast_settings, state_store=store)

    async def scenario():
        await orchestrator.up()
        await orchestrator.detach()

    run(scenario())
    assert driver.stopped == []
    state = store.load()
    assert state.stages == [["cache", "mongo", "proxy"], ["app"]]
    assert state.services["app"].state == ServiceState.HEALTHY
    assert state.services["app"].handle.instance_id == "app-1"

    report = run(inspect_persisted(state, driver, settings=fast_settings))
    assert report["app"] == "healthy (running)"

    result = run(stop_persisted(state, driver, settings=fast_settings, sinks=[]))
    assert driver.stopped[0] == "app"
    assert set(driver.stopped) == {"app", "cache", "mongo", "proxy"}
    assert result.ok


def test_down_clears_persisted_state(driver, fast_settings, tmp_path):
    store = StateStore(tmp_path / "state")
    orchestrator = _orchestrator([make_service("a")], driver, fast_settings, state_store=store)

    async def scenario():
        await orchestrator.up()
        assert store.load() is not None
        await orchestrator.down()

    run(scenario())
    assert store.load() is None


def test_json_lines_sink_writes_one_event_per_line(driver, fast_settings, tmp_path):
    path = tmp_path / "logs" / "events.jsonl"
    orchestrator = _orchestrator([make_service("a", health=False)], driver, fast_settings,
                                 sinks=[JsonLinesEventSink(str(path))])

    async def scenario():
        await orchestrator.up()
        await orchestrator.down()

    run(scenario())
    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [line["new_state"] for line in lines] == ["launching", "healthy", "stopping", "stopped"]
    assert lines[0]["old_state"] == "pending"
