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
Runtime driver that runs services as local processes with log redirection.
"""
import logging
import os
import subprocess
import threading
import uuid
from typing import Dict, List, Optional

import psutil
from dotenv import dotenv_values

from ..MANAGERS.runtime_driver import InstanceHandle, InstanceStatus, RuntimeDriver
from ..MODELS.service_definition import ServiceDefinition
from ..errors import RuntimeDriverError

logger = logging.getLogger(__name__)


class ProcessDriver(RuntimeDriver):
    """
    Launches each service command as a child process.

    Handles carry pid and process create time, so a driver in another
    process can still stop or inspect the instance.
    """
    def __init__(self, base_dir: str = ".", log_dir: Optional[str] = None):
        """
        Initializes the process driver.

        :param base_dir: Directory that relative working dirs and env files resolve against.
        :param log_dir: Directory for per-service logs. Defaults to <base_dir>/.svcorch/logs.
        """
        self.base_dir = base_dir
        self.log_dir = log_dir or os.path.join(base_dir, ".svcorch", "logs")
        self._processes: Dict[str, subprocess.Popen] = {}
        self._log_handles: Dict[str, object] = {}
        self._lock = threading.Lock()

    def build_environment(self, service_def: ServiceDefinition, env: Dict[str, str]) -> Dict[str, str]:
        """
        Merges the current process environment, env files and the resolved service environment.

        :param service_def: Definition of the service.
        :param env: Resolved environment of the service.
        :return: The environment for the child process.
        """
        merged = os.environ.copy()
        # Later files override earlier ones
        for env_file in service_def.env_file:
            path = os.path.join(self.base_dir, env_file)
            if not os.path.exists(path):
                raise RuntimeDriverError(service_def.name, "launch", f"env file {env_file} not found")
            merged.update({k: v for k, v in dotenv_values(path).items() if v is not None})
        merged.update(env)
        return merged

    def launch(self, service_def: ServiceDefinition, env: Dict[str, str]) -> InstanceHandle:
        command = service_def.full_command()
        if not command:
            raise RuntimeDriverError(service_def.name, "launch", "no command specified")

        working_dir = service_def.working_dir
        if working_dir and not os.path.isabs(working_dir):
            working_dir = os.path.join(self.base_dir, working_dir)
        if working_dir:
            os.makedirs(working_dir, exist_ok=True)

        full_env = self.build_environment(service_def, env)
        os.makedirs(self.log_dir, exist_ok=True)
        log_path = os.path.join(self.log_dir, f"{service_def.name}.log")

        logger.info("[%s] Starting command: %s", service_def.name, " ".join(command))
        log_handle = open(log_path, "a")
        try:
            # No shell: the command is passed as an argument vector
            process = subprocess.Popen(
                command,
                env=full_env,
                cwd=working_dir,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                shell=False,
                start_new_session=(os.name != "nt"),
            )
        except OSError as e:
            log_handle.close()
            raise RuntimeDriverError(service_def.name, "launch", str(e)) from e

        try:
            create_time = psutil.Process(process.pid).create_time()
        except psutil.Error:
            create_time = None

        handle = InstanceHandle(
            service=service_def.name,
            instance_id=uuid.uuid4().hex[:12],
            pid=process.pid,
            create_time=create_time,
        )
        with self._lock:
            self._processes[handle.instance_id] = process
            self._log_handles[handle.instance_id] = log_handle
        return handle

    def stop(self, handle: InstanceHandle, timeout: float = 10.0) -> None:
        process = self._find_process(handle)
        if process is None:
            self._release(handle)
            return

        logger.info("[%s] Stopping process %s...", handle.service, handle.pid)
        try:
            children = process.children(recursive=True)
        except psutil.Error:
            children = []
        targets: List[psutil.Process] = [process] + children
        for proc in targets:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                raise RuntimeDriverError(handle.service, "stop", str(e)) from e

        _, alive = psutil.wait_procs(targets, timeout=timeout)
        if alive:
            logger.warning("[%s] Process did not terminate, killing...", handle.service)
            for proc in alive:
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass
            psutil.wait_procs(alive, timeout=timeout)
        self._release(handle)

    def status(self, handle: InstanceHandle) -> InstanceStatus:
        with self._lock:
            child = self._processes.get(handle.instance_id)
        if child is not None:
            exit_code = child.poll()
            if exit_code is None:
                return InstanceStatus.running()
            return InstanceStatus.exited(exit_code)

        # Not our child: inspect it through psutil
        process = self._find_process(handle)
        if process is None:
            return InstanceStatus.exited(None) if handle.pid else InstanceStatus.unknown()
        try:
            if process.status() == psutil.STATUS_ZOMBIE:
                return InstanceStatus.exited(None)
        except psutil.NoSuchProcess:
            return InstanceStatus.exited(None)
        except psutil.Error:
            return InstanceStatus.unknown()
        return InstanceStatus.running()

    def _find_process(self, handle: InstanceHandle) -> Optional[psutil.Process]:
        """
        Looks up the live process of a handle, guarding against pid reuse.
        """
        if not handle.pid:
            return None
        try:
            process = psutil.Process(handle.pid)
            if handle.create_time is not None and abs(process.create_time() - handle.create_time) > 1.0:
                return None
            return process
        except psutil.NoSuchProcess:
            return None
        except psutil.Error as e:
            raise RuntimeDriverError(handle.service, "status", str(e)) from e

    def _release(self, handle: InstanceHandle) -> None:
        with self._lock:
            process = self._processes.pop(handle.instance_id, None)
            log_handle = self._log_handles.pop(handle.instance_id, None)
        if process is not None:
            try:
                process.wait(timeout=1)
            except subprocess.TimeoutExpired:
                logger.warning("[%s] Process %s still not reaped", handle.service, handle.pid)
        if log_handle is not None:
            log_handle.close()
