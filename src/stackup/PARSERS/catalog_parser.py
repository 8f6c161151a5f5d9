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
Loading of service catalogs from stackup YAML or docker-compose files.
"""
import math
import os
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import structlog
import yaml
from pydantic import ValidationError

from ..exceptions import CatalogError
from ..MODELS.service_definition import ReadinessCheck, ServiceDefinition, StackGroup
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = structlog.get_logger(__name__)

CatalogSource = Union[str, "os.PathLike[str]", Mapping[str, Any]]


class ServiceCatalog:
    """
    Parser and validator for the declared services of a stack.

    A catalog is a YAML document with a ``services`` mapping. Native keys
    (``tier``, ``readiness``, ``endpoints``...) and docker-compose keys
    (``labels``, ``healthcheck``, ``ports``, ``depends_on``) are both understood,
    so a compose file can be used directly as a catalog.
    """
    TIER_LABEL = "stackup.tier"
    STACK_LABEL = "stackup.stack"
    DURATION_FIELDS = ("timeout", "interval", "max_interval", "check_timeout")

    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the catalog loader with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        """
        self.context = context if context is not None else dict(os.environ)

    def load(self, source: CatalogSource) -> List[ServiceDefinition]:
        """
        Loads and validates services from a path, YAML text, or parsed mapping.

        :param source: The catalog source.
        :return: Services in declaration order.
        :raises CatalogError: If the catalog is malformed or inconsistent.
        """
        if isinstance(source, Mapping):
            return self._from_mapping(source)
        if isinstance(source, os.PathLike):
            return self.parse(os.fspath(source))
        if os.path.exists(source):
            return self.parse(source)
        if "\n" in source or ":" in source:
            return self.parse_from_string(source)
        raise CatalogError(f"{source} not found.")

    def parse(self, catalog_path: str) -> List[ServiceDefinition]:
        """
        Parses a catalog file from a path.

        :param catalog_path: Path to the catalog file.
        :return: Parsed services.
        """
        try:
            with open(catalog_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise CatalogError(f"Cannot read catalog {catalog_path}: {e}") from e
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> List[ServiceDefinition]:
        """
        Parses a catalog from a string.

        :param content: YAML content of the catalog.
        :return: Parsed services.
        """
        missing: List[str] = []
        try:
            content = EnvironmentInterpolator.interpolate(content, self.context, missing=missing)
        except KeyError as e:
            raise CatalogError(f"Interpolation failed: {e.args[0]}") from e
        for name in sorted(set(missing)):
            # Unset plain ${VAR} resolves to an empty string, as in compose
            logger.warning("catalog_variable_unset", variable=name)

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise CatalogError(f"Invalid catalog YAML: {e}") from e
        return self._from_mapping(data or {})

    def _from_mapping(self, data: Any) -> List[ServiceDefinition]:
        if not isinstance(data, Mapping):
            raise CatalogError("Catalog must be a mapping with a 'services' key")

        raw_services = data.get('services') or {}
        if not isinstance(raw_services, Mapping):
            raise CatalogError("'services' must be a mapping of service name to definition")

        services = []
        for name, spec in raw_services.items():
            services.append(self._parse_service(str(name), spec or {}))

        self.validate(services)
        logger.debug("catalog_loaded", services=[svc.name for svc in services])
        return services

    def _parse_service(self, name: str, spec: Any) -> ServiceDefinition:
        """
        Parses a single service definition.

        :param name: The name of the service.
        :param spec: The raw service mapping.
        :return: A ServiceDefinition instance.
        """
        if not isinstance(spec, Mapping):
            raise CatalogError(f"Service {name} must be a mapping")

        labels = self._parse_labels(spec.get('labels'))
        depends_on = spec.get('depends_on') or []
        if isinstance(depends_on, Mapping):
            depends_on = list(depends_on.keys())

        try:
            return ServiceDefinition(
                name=name,
                tier=spec.get('tier') or labels.get(self.TIER_LABEL),
                depends_on=self._to_list(depends_on),
                readiness=self._parse_readiness(name, spec),
                endpoints=self._parse_endpoints(spec),
                credentials=spec.get('credentials'),
                stack=spec.get('stack') or labels.get(self.STACK_LABEL) or StackGroup.APPS,
                manifests=self._to_list(spec.get('manifests')),
                selector=spec.get('selector'),
                namespace=spec.get('namespace'),
                labels=labels,
            )
        except ValidationError as e:
            raise CatalogError(
                f"Invalid definition for service {name}",
                {"errors": [err["msg"] for err in e.errors()]},
            ) from e

    def _parse_readiness(self, name: str, spec: Mapping[str, Any]) -> ReadinessCheck:
        """
        Builds the readiness descriptor from a native ``readiness`` block,
        falling back to a compose ``healthcheck``.
        """
        try:
            if isinstance(spec.get('readiness'), Mapping):
                values = dict(spec['readiness'])
                if 'retries' in values and 'max_attempts' not in values:
                    values['max_attempts'] = values.pop('retries')
                if isinstance(values.get('test'), str):
                    values['test'] = ["CMD-SHELL", values['test']]
                for key in self.DURATION_FIELDS:
                    if key in values:
                        values[key] = parse_duration(values[key])
                return ReadinessCheck(**values)

            hc = spec.get('healthcheck')
            if isinstance(hc, Mapping) and not hc.get('disable'):
                return self._readiness_from_healthcheck(hc)
        except (ValueError, TypeError) as e:
            raise CatalogError(f"Invalid readiness for service {name}: {e}") from e

        return ReadinessCheck()

    def _readiness_from_healthcheck(self, hc: Mapping[str, Any]) -> ReadinessCheck:
        """
        Translates a compose healthcheck into a readiness descriptor.

        The overall budget covers the start period plus every retry.
        """
        test = hc.get('test') or []
        if isinstance(test, str):
            test = ["CMD-SHELL", test]
        if test and test[0] == "NONE":
            test = []

        interval = parse_duration(hc.get('interval', 3))
        check_timeout = parse_duration(hc.get('timeout', 10))
        start_period = parse_duration(hc.get('start_period', 0))
        retries = int(hc.get('retries', 3))

        warmup = math.ceil(start_period / interval) if interval > 0 else 0
        max_attempts = max(1, retries + warmup)
        return ReadinessCheck(
            test=list(test),
            interval=interval,
            check_timeout=check_timeout,
            max_attempts=max_attempts,
            timeout=start_period + (interval + check_timeout) * max_attempts,
        )

    def _parse_endpoints(self, spec: Mapping[str, Any]) -> List[str]:
        """
        Uses declared endpoints, or derives ``host:port`` strings from published ports.
        """
        if spec.get('endpoints'):
            return [str(ep) for ep in self._to_list(spec['endpoints'])]

        endpoints = []
        for p in spec.get('ports') or []:
            if isinstance(p, Mapping):
                if p.get('published') is not None:
                    host = p.get('host_ip') or 'localhost'
                    endpoints.append(f"{host}:{p['published']}")
                continue

            parts = str(p).split('/')[0].split(':')
            if len(parts) == 2:
                endpoints.append(f"localhost:{parts[0]}")
            elif len(parts) == 3:
                endpoints.append(f"{parts[0] or 'localhost'}:{parts[1]}")
        return endpoints

    def _parse_labels(self, labels: Any) -> Dict[str, str]:
        if not labels:
            return {}
        if isinstance(labels, Mapping):
            return {str(k): str(v) for k, v in labels.items()}
        parsed = {}
        for item in labels:
            key, _, value = str(item).partition('=')
            parsed[key] = value
        return parsed

    def validate(self, services: List[ServiceDefinition]) -> None:
        """
        Checks that dependencies exist and do not point at a later explicit tier.

        Tiers left to the naming heuristic are checked after classification.

        :raises CatalogError: On the first inconsistency found.
        """
        by_name = {svc.name: svc for svc in services}
        for svc in services:
            for dep in svc.depends_on:
                if dep not in by_name:
                    raise CatalogError(
                        f"Service {svc.name} depends on unknown service {dep}",
                        {"service": svc.name, "dependency": dep},
                    )
                dep_tier = by_name[dep].tier
                if svc.tier and dep_tier and dep_tier.rank > svc.tier.rank:
                    raise CatalogError(
                        f"Service {svc.name} ({svc.tier.value}) depends on {dep} "
                        f"in later tier {dep_tier.value}",
                        {"service": svc.name, "dependency": dep},
                    )

    @staticmethod
    def select(services: List[ServiceDefinition],
               stacks: Iterable[Union[StackGroup, str]]) -> List[ServiceDefinition]:
        """
        Keeps the services of the given stack groups.

        Dependencies on services outside the selection are dropped; they are
        expected to be running already.
        """
        wanted = {StackGroup(s) for s in stacks}
        selected = [svc for svc in services if svc.stack in wanted]
        names = {svc.name for svc in selected}
        return [
            svc.model_copy(update={"depends_on": [d for d in svc.depends_on if d in names]})
            for svc in selected
        ]

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return list(val)

