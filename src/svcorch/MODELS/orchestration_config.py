"""
Models for overall orchestration configuration.
"""
from typing import Dict, Iterable, List

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from .service_definition import ServiceDefinition
from ..errors import ConfigError


class OrchestrationConfig(BaseModel):
    """
    Complete, validated set of service definitions for one orchestration run.
    Equivalent to a parsed compose file.
    """
    model_config = ConfigDict(frozen=True)

    services: Dict[str, ServiceDefinition]

    @model_validator(mode="after")
    def _check_references(self) -> "OrchestrationConfig":
        published: Dict[tuple, str] = {}
        for key, svc in self.services.items():
            if key != svc.name:
                raise ValueError(f"service key {key!r} does not match its name {svc.name!r}")
            unknown = sorted(dep for dep in svc.depends_on if dep not in self.services)
            if unknown:
                raise ValueError(
                    f"service {svc.name} depends on undeclared services: {', '.join(unknown)}"
                )
            for port in sorted(svc.ports, key=lambda p: (p.target, p.protocol)):
                if port.published is None:
                    continue
                slot = (port.published, port.protocol)
                owner = published.get(slot)
                if owner is not None:
                    raise ValueError(
                        f"host port {port.published}/{port.protocol} is published by both "
                        f"{owner} and {svc.name}"
                    )
                published[slot] = svc.name
        return self

    @classmethod
    def from_definitions(cls, definitions: Iterable[ServiceDefinition]) -> "OrchestrationConfig":
        """
        Builds a validated configuration from a sequence of definitions.

        :param definitions: The service definitions.
        :return: The configuration.
        :raises ConfigError: On duplicate names, unknown dependencies or port clashes.
        """
        services: Dict[str, ServiceDefinition] = {}
        for svc in definitions:
            if svc.name in services:
                raise ConfigError(f"Duplicate service name: {svc.name}")
            services[svc.name] = svc
        try:
            return cls(services=services)
        except ValidationError as e:
            raise ConfigError(format_validation_error(e)) from e

    def names(self) -> List[str]:
        """
        Service names in lexicographic order.
        """
        return sorted(self.services)


def format_validation_error(error: ValidationError) -> str:
    """
    Condenses a pydantic validation error into a one-line message.
    """
    details = error.errors()
    if not details:
        return str(error)
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return f"{location}: {message}" if location else message
