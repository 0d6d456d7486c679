"""
Models for defining services, including restart policies, health checks and secret bindings.
"""
from typing import List, Dict, Optional, Union, FrozenSet, Tuple
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be relaunched.
    """
    NO = "no"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"
    UNLESS_STOPPED = "unless-stopped"

    @classmethod
    def _missing_(cls, value):
        # Accept Never/OnFailure/UnlessStopped spellings next to compose ones.
        if not isinstance(value, str):
            return None
        key = value.strip().lower().replace("_", "").replace("-", "")
        aliases = {
            "no": cls.NO,
            "never": cls.NO,
            "onfailure": cls.ON_FAILURE,
            "always": cls.ALWAYS,
            "unlessstopped": cls.UNLESS_STOPPED,
        }
        return aliases.get(key)


class RestartPolicy(BaseModel):
    """
    Defines how a service is relaunched after failing or exiting.

    ``max_attempts`` bounds relaunches for on-failure; None means the
    orchestrator default. ``delay`` is the base of the exponential backoff;
    zero means the orchestrator default.
    """
    model_config = ConfigDict(frozen=True)

    condition: RestartPolicyCondition = RestartPolicyCondition.NO
    max_attempts: Optional[int] = Field(None, ge=0)
    delay: float = Field(0.0, ge=0)


class HealthCheck(BaseModel):
    """
    Defines how readiness of a service is probed: a compose ``test`` command or an HTTP endpoint.
    """
    model_config = ConfigDict(frozen=True)

    test: List[str] = []
    endpoint: Optional[str] = None
    interval: float = Field(30.0, gt=0)
    timeout: float = Field(30.0, gt=0)
    retries: int = Field(3, ge=1)
    start_period: float = Field(0.0, ge=0)

    @model_validator(mode="after")
    def _check_probe_target(self) -> "HealthCheck":
        if bool(self.test) == bool(self.endpoint):
            raise ValueError("health check needs exactly one of 'test' or 'endpoint'")
        if self.test and self.test[0] in ("CMD", "CMD-SHELL") and len(self.test) < 2:
            raise ValueError(f"health check {self.test[0]} needs a command")
        return self

    def startup_budget(self) -> float:
        """
        Worst-case seconds before the service is declared unhealthy.
        """
        return self.start_period + self.retries * (self.interval + self.timeout)


class SecretRef(BaseModel):
    """
    Reference to a secret held by an external provider, resolved at launch time.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)

    def __str__(self) -> str:
        return f"<secret:{self.name}>"


class PortMapping(BaseModel):
    """
    Maps a service port to an optional published host port.
    """
    model_config = ConfigDict(frozen=True)

    target: int = Field(gt=0, le=65535)
    published: Optional[int] = Field(None, gt=0, le=65535)
    protocol: str = "tcp"


EnvValue = Union[SecretRef, str]


class ServiceDefinition(BaseModel):
    """
    The immutable definition of a single service, as declared in a compose file.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    image: str = ""

    # Execution
    command: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, EnvValue] = {}
    env_file: List[str] = []

    # Networking
    ports: FrozenSet[PortMapping] = frozenset()

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    health_check: Optional[HealthCheck] = None
    depends_on: FrozenSet[str] = frozenset()

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_literals(cls, value):
        if not isinstance(value, dict):
            return value
        converted = {}
        for key, item in value.items():
            if item is None:
                item = ""
            elif isinstance(item, bool):
                item = "true" if item else "false"
            elif isinstance(item, (int, float)):
                item = str(item)
            converted[key] = item
        return converted

    @model_validator(mode="after")
    def _check_self_dependency(self) -> "ServiceDefinition":
        if self.name in self.depends_on:
            raise ValueError(f"service {self.name} depends on itself")
        return self

    def secret_refs(self) -> List[Tuple[str, SecretRef]]:
        """
        Environment variables bound to secrets, sorted by variable name.
        """
        return sorted(
            (key, value) for key, value in self.environment.items()
            if isinstance(value, SecretRef)
        )

    def full_command(self) -> List[str]:
        """
        Entrypoint followed by command; the command alone when no entrypoint is set.
        """
        if self.entrypoint:
            return list(self.entrypoint) + list(self.command)
        return list(self.command)
