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
Parsers for compose-style YAML files.

Environment values that are exactly ``${NAME}`` or ``${secret:NAME}`` (or a
``{secret: NAME}`` mapping) become secret references, resolved at launch
time. Every other string is interpolated from the parse context.
"""
import os
import shlex
from collections.abc import Hashable
from typing import Dict, Any, List, Optional, Set

import yaml
from pydantic import ValidationError

from ..MODELS.orchestration_config import OrchestrationConfig, format_validation_error
from ..MODELS.service_definition import (
    HealthCheck,
    PortMapping,
    RestartPolicy,
    RestartPolicyCondition,
    SecretRef,
    ServiceDefinition,
)
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..errors import ConfigError

# deploy.restart_policy.condition values
_DEPLOY_CONDITIONS = {
    "none": RestartPolicyCondition.NO,
    "on-failure": RestartPolicyCondition.ON_FAILURE,
    "any": RestartPolicyCondition.ALWAYS,
}


class _UniqueKeyLoader(yaml.SafeLoader):
    """
    Safe loader that rejects duplicate keys instead of silently keeping the last one.
    """


def _construct_unique_mapping(loader, node, deep=False):
    seen: Set[Any] = set()
    for key_node, _ in node.value:
        if key_node.tag == "tag:yaml.org,2002:merge":
            # << merge keys may be overridden by explicit ones
            continue
        key = loader.construct_object(key_node, deep=deep)
        if not isinstance(key, Hashable):
            # construct_mapping reports unhashable keys itself
            continue
        if key in seen:
            raise ConfigError(
                f"Duplicate key {key!r} at line {key_node.start_mark.line + 1}"
            )
        seen.add(key)
    return loader.construct_mapping(node, deep=deep)


_UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_unique_mapping
)


class ComposeParser:
    """
    Parser for compose files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        """
        self.context = context if context is not None else dict(os.environ)

    def parse(self, compose_path: str) -> OrchestrationConfig:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed configuration.
        :raises ConfigError: If the file is missing or invalid.
        """
        try:
            with open(compose_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise ConfigError(f"Cannot read {compose_path}: {e}") from e
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> OrchestrationConfig:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :return: Parsed configuration.
        :raises ConfigError: If the content is invalid.
        """
        try:
            data = yaml.load(content, Loader=_UniqueKeyLoader)
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigError(f"Invalid YAML: {e}") from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Compose file must be a mapping")

        services_spec = data.get('services') or {}
        if not isinstance(services_spec, dict):
            raise ConfigError("'services' must be a mapping of service name to definition")

        definitions = []
        for name, spec in services_spec.items():
            definitions.append(self._parse_service(str(name), spec or {}))
        return OrchestrationConfig.from_definitions(definitions)

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceDefinition:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance.
        :raises ConfigError: If the definition is invalid.
        """
        if not isinstance(spec, dict):
            raise ConfigError(f"Service {name} must be a mapping")
        try:
            environment = self._parse_environment(spec.get('environment'))
            environment.update(self._parse_secrets(spec.get('secrets')))
            return ServiceDefinition(
                name=name,
                image=self._interpolate(spec.get('image', '')),
                command=self._to_command(spec.get('command')),
                entrypoint=self._to_command(spec.get('entrypoint')),
                working_dir=self._interpolate(spec['working_dir']) if spec.get('working_dir') else None,
                environment=environment,
                env_file=[self._interpolate(p) for p in self._to_list(spec.get('env_file'))],
                ports=frozenset(self._parse_ports(spec.get('ports'))),
                restart_policy=self._parse_restart(spec),
                health_check=self._parse_healthcheck(spec.get('healthcheck')),
                depends_on=frozenset(self._parse_depends_on(spec.get('depends_on'))),
            )
        except ValidationError as e:
            raise ConfigError(f"Service {name}: {format_validation_error(e)}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Service {name}: {e}") from e

    def _parse_environment(self, env_spec: Any) -> Dict[str, Any]:
        environment: Dict[str, Any] = {}
        if env_spec is None:
            return environment
        if isinstance(env_spec, list):
            for entry in env_spec:
                entry = str(entry)
                if '=' in entry:
                    key, value = entry.split('=', 1)
                    environment[key] = self._env_value(value)
                else:
                    # Bare name: pass the value through from the secret provider
                    environment[entry] = SecretRef(name=entry)
        elif isinstance(env_spec, dict):
            for key, value in env_spec.items():
                if isinstance(value, dict):
                    if 'secret' not in value:
                        raise ValueError(f"environment {key}: mapping values need a 'secret' key")
                    environment[str(key)] = SecretRef(name=str(value['secret']))
                elif value is None:
                    environment[str(key)] = SecretRef(name=str(key))
                elif isinstance(value, str):
                    environment[str(key)] = self._env_value(value)
                else:
                    environment[str(key)] = value
        else:
            raise ValueError("environment must be a list or a mapping")
        return environment

    def _parse_secrets(self, secrets_spec: Any) -> Dict[str, SecretRef]:
        """
        Service-level ``secrets`` entries become environment bindings named after their target.
        """
        bindings: Dict[str, SecretRef] = {}
        for entry in self._to_list(secrets_spec):
            if isinstance(entry, dict):
                source = str(entry['source'])
                bindings[str(entry.get('target', source))] = SecretRef(name=source)
            else:
                bindings[str(entry)] = SecretRef(name=str(entry))
        return bindings

    def _env_value(self, value: str) -> Any:
        ref = EnvironmentInterpolator.reference_name(value)
        if ref is not None:
            return SecretRef(name=ref)
        return self._interpolate(value)

    def _parse_ports(self, ports_spec: Any) -> List[PortMapping]:
        ports = []
        for p in self._to_list(ports_spec):
            if isinstance(p, dict):
                ports.append(PortMapping(
                    target=int(p['target']),
                    published=int(p['published']) if p.get('published') is not None else None,
                    protocol=p.get('protocol', 'tcp'),
                ))
                continue
            text = self._interpolate(str(p))
            protocol = 'tcp'
            if '/' in text:
                text, protocol = text.rsplit('/', 1)
            parts = text.split(':')
            if len(parts) == 1:
                ports.append(PortMapping(target=int(parts[0]), protocol=protocol))
            elif len(parts) in (2, 3):
                # [host_ip:]published:target
                published = int(parts[-2]) if parts[-2] else None
                ports.append(PortMapping(target=int(parts[-1]), published=published, protocol=protocol))
            else:
                raise ValueError(f"invalid port mapping {p!r}")
        return ports

    def _parse_depends_on(self, depends_spec: Any) -> List[str]:
        if depends_spec is None:
            return []
        if isinstance(depends_spec, dict):
            return [str(name) for name in depends_spec]
        if isinstance(depends_spec, list):
            return [str(name) for name in depends_spec]
        if isinstance(depends_spec, str):
            return [depends_spec]
        raise ValueError("depends_on must be a list or a mapping")

    def _parse_restart(self, spec: Dict[str, Any]) -> RestartPolicy:
        deploy = spec.get('deploy') or {}
        if not isinstance(deploy, dict):
            raise ValueError("deploy must be a mapping")
        deploy_policy = deploy.get('restart_policy') or {}
        if not isinstance(deploy_policy, dict):
            raise ValueError("deploy.restart_policy must be a mapping")
        max_attempts = deploy_policy.get('max_attempts')
        delay = parse_duration(deploy_policy['delay']) if deploy_policy.get('delay') is not None else 0.0

        if 'restart' in spec:
            # an unquoted "no" is loaded as a YAML boolean
            raw = "no" if spec['restart'] is False else str(spec['restart'])
            # compose allows on-failure:<max-retries>
            if raw.startswith('on-failure:'):
                raw, _, count = raw.partition(':')
                max_attempts = int(count)
            try:
                condition = RestartPolicyCondition(raw)
            except ValueError:
                raise ValueError(f"unknown restart policy {raw!r}") from None
        elif 'condition' in deploy_policy:
            raw = str(deploy_policy['condition'])
            if raw not in _DEPLOY_CONDITIONS:
                raise ValueError(f"unknown restart_policy condition {raw!r}")
            condition = _DEPLOY_CONDITIONS[raw]
        else:
            condition = RestartPolicyCondition.NO

        return RestartPolicy(condition=condition, max_attempts=max_attempts, delay=delay)

    def _parse_healthcheck(self, hc_spec: Any) -> Optional[HealthCheck]:
        if not hc_spec:
            return None
        if not isinstance(hc_spec, dict):
            raise ValueError("healthcheck must be a mapping")
        if hc_spec.get('disable'):
            return None
        test = hc_spec.get('test')
        if isinstance(test, str):
            test = ["CMD-SHELL", test]
        elif test is not None:
            test = [str(part) for part in test]
        if test and test[0] == "NONE":
            return None

        values: Dict[str, Any] = {'test': test or [], 'endpoint': hc_spec.get('endpoint')}
        for key in ('interval', 'timeout', 'start_period'):
            if hc_spec.get(key) is not None:
                values[key] = parse_duration(hc_spec[key])
        if hc_spec.get('retries') is not None:
            values['retries'] = int(hc_spec['retries'])
        return HealthCheck(**values)

    def _to_command(self, val: Any) -> List[str]:
        if isinstance(val, str):
            return shlex.split(self._interpolate(val))
        return [self._interpolate(str(part)) for part in self._to_list(val)]

    def _interpolate(self, value: str) -> str:
        return EnvironmentInterpolator.interpolate(str(value), self.context)

    def _to_list(self, val: Any) -> List[Any]:
        """
        Helper to ensure a value is a list.

        :param val: The value to convert.
        :return: A list.
        """
        if val is None:
            return []
        if isinstance(val, (str, dict)):
            return [val]
        return list(val)
