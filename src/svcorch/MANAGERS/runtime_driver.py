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
Interface between the orchestrator and whatever actually runs services.

The control loop only ever calls ``launch``, ``stop`` and ``status``; any
container engine or process supervisor implementing them can be plugged in.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict

from ..MODELS.service_definition import ServiceDefinition


class InstanceHandle(BaseModel):
    """
    Opaque reference to one launched instance, returned by ``launch``.

    It is a plain serializable value so a later process can stop or
    inspect the instance from persisted state.
    """
    model_config = ConfigDict(frozen=True)

    service: str
    instance_id: str
    pid: Optional[int] = None
    create_time: Optional[float] = None


class InstanceState(str, Enum):
    """Process-level state reported by a driver."""

    RUNNING = "running"
    EXITED = "exited"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class InstanceStatus:
    """Result of a status call."""

    state: InstanceState
    exit_code: Optional[int] = None

    @classmethod
    def running(cls) -> "InstanceStatus":
        return cls(InstanceState.RUNNING)

    @classmethod
    def exited(cls, exit_code: Optional[int]) -> "InstanceStatus":
        return cls(InstanceState.EXITED, exit_code)

    @classmethod
    def unknown(cls) -> "InstanceStatus":
        return cls(InstanceState.UNKNOWN)

    def __str__(self) -> str:
        if self.state == InstanceState.EXITED:
            return f"exited({self.exit_code})"
        return self.state.value


class RuntimeDriver(ABC):
    """
    Starts, stops and inspects service instances.

    Implementations raise ``RuntimeDriverError`` when an operation fails.
    Methods are synchronous; the orchestrator runs them off the event loop
    and bounds each call with a timeout.
    """

    @abstractmethod
    def launch(self, service_def: ServiceDefinition, env: Dict[str, str]) -> InstanceHandle:
        """
        Starts one instance of a service.

        :param service_def: Definition of the service.
        :param env: Resolved environment, secrets included.
        :return: Handle of the new instance.
        """

    @abstractmethod
    def stop(self, handle: InstanceHandle, timeout: float = 10.0) -> None:
        """
        Stops an instance; returning is the acknowledgement.

        :param handle: The instance to stop.
        :param timeout: Grace period before the instance is killed.
        """

    @abstractmethod
    def status(self, handle: InstanceHandle) -> InstanceStatus:
        """
        Reports whether an instance is running.

        :param handle: The instance to inspect.
        """
