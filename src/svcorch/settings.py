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
Orchestrator-wide tunables.

Values come from ``SVCORCH_*`` environment variables and fall back to the
defaults below. They apply to every service of a run; per-service knobs
(health check timings, restart ceilings) live on the service definitions.
"""
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """
    Settings for the control loop and its collaborators.
    """

    default_max_attempts: int = Field(
        3, ge=0, description="Relaunch ceiling for on-failure services without one."
    )
    backoff_base: float = Field(
        1.0, ge=0, description="Initial relaunch delay when a policy sets none."
    )
    backoff_cap: float = Field(60.0, ge=0, description="Upper bound for relaunch delay.")
    launch_timeout: float = Field(30.0, gt=0, description="Seconds to wait for a launch ack.")
    stop_timeout: float = Field(10.0, gt=0, description="Seconds to wait for a stop ack.")
    status_timeout: float = Field(5.0, gt=0, description="Seconds to wait for a status call.")
    secret_timeout: float = Field(10.0, gt=0, description="Seconds to wait for a secret.")
    secret_retries: int = Field(
        3, ge=1, description="Attempts against the secret provider on transient errors."
    )
    watch_interval: float = Field(
        1.0, gt=0, description="Seconds between status polls of healthy services."
    )
    unknown_status_limit: int = Field(
        3, ge=1, description="Consecutive unknown statuses after which a healthy service counts as gone."
    )
    state_dir: Path = Field(Path(".svcorch"), description="Run state and log directory.")
    log_level: str = Field("INFO", description="Logging verbosity level.")

    model_config = SettingsConfigDict(env_prefix="SVCORCH_", extra="ignore")
