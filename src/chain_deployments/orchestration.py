"""Orchestration files and dependency resolution for chain-deployments library."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from .exceptions import ValidationError
from .types import Component, ExecutionPlan, ExecutionStep

logger = logging.getLogger(__name__)


@dataclass
class OrchestrationConfig:
    """
    A named group of deployment components.

    YAML layout:

        group: core
        components:
          Token:
            script: script/DeployToken.s.sol
          Vault:
            script: script/DeployVault.s.sol
            deps: [Token]
            env:
              VAULT_LABEL: main
    """

    group: str
    components: Dict[str, Component] = field(default_factory=dict)

    def validate(self) -> None:
        """
        Check the configuration before any graph work.

        Raises:
            ValidationError: On the first problem found
        """
        if not self.group:
            raise ValidationError("group name is required")

        if not self.components:
            raise ValidationError("at least one component is required")

        for name in sorted(self.components):
            component = self.components[name]
            if not component.script:
                raise ValidationError(f"component '{name}' must specify a script")

            for dep in component.deps:
                if dep == name:
                    raise ValidationError(f"component '{name}' cannot depend on itself")
                if dep not in self.components:
                    raise ValidationError(
                        f"component '{name}' depends on non-existent component '{dep}'"
                    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestrationConfig":
        raw_components = data.get("components") or {}
        if not isinstance(raw_components, dict):
            raise ValidationError("'components' must be a mapping of name -> component")

        components: Dict[str, Component] = {}
        for name, raw in raw_components.items():
            raw = raw or {}
            if not isinstance(raw, dict):
                raise ValidationError(f"component '{name}' must be a mapping")
            components[str(name)] = Component(
                name=str(name),
                script=raw.get("script") or "",
                deps=[str(d) for d in raw.get("deps") or []],
                env={str(k): str(v) for k, v in (raw.get("env") or {}).items()},
            )

        return cls(group=str(data.get("group") or ""), components=components)


class DependencyGraph:
    """Directed graph of components; edges point from a dependency to its dependents."""

    def __init__(self, components: Dict[str, Component]):
        self.nodes = components
        self.edges: Dict[str, List[str]] = {}

        for name, component in components.items():
            for dep in component.deps:
                # Missing dependencies are reported by topological_sort()
                if dep not in components:
                    continue
                self.edges.setdefault(dep, []).append(name)

    def topological_sort(self) -> List[ExecutionStep]:
        """
        Linearize the graph with Kahn's algorithm.

        Among components with no ordering constraint between them, lexical
        order wins: the ready queue is sorted initially and re-sorted every
        time a node becomes ready.

        Returns:
            Steps in execution order

        Raises:
            ValidationError: On a missing dependency or a cycle
        """
        in_degree = {name: 0 for name in self.nodes}

        for name, component in self.nodes.items():
            for dep in component.deps:
                if dep not in self.nodes:
                    raise ValidationError(
                        f"component '{name}' depends on non-existent component '{dep}'"
                    )
                in_degree[name] += 1

        queue = sorted(name for name, degree in in_degree.items() if degree == 0)
        result: List[ExecutionStep] = []

        while queue:
            current = queue.pop(0)
            component = self.nodes[current]
            result.append(
                ExecutionStep(
                    name=current,
                    script=component.script,
                    env=dict(component.env),
                    dependencies=list(component.deps),
                )
            )

            for dependent in sorted(self.edges.get(current, [])):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)
                    queue.sort()

        if len(result) != len(self.nodes):
            cycle_nodes = sorted(name for name, degree in in_degree.items() if degree > 0)
            raise ValidationError(
                f"circular dependency detected involving components: {cycle_nodes}"
            )

        return result


def parse_orchestration(text: str) -> OrchestrationConfig:
    """
    Parse and validate an orchestration document.

    Args:
        text: YAML source

    Returns:
        Validated OrchestrationConfig

    Raises:
        ValidationError: If the YAML is malformed or the configuration invalid
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValidationError(f"failed to parse YAML: {e}") from e

    if not isinstance(data, dict):
        raise ValidationError("orchestration file must contain a mapping")

    config = OrchestrationConfig.from_dict(data)
    config.validate()
    return config


def parse_orchestration_file(file_path: Union[Path, str]) -> OrchestrationConfig:
    """Read, parse and validate an orchestration YAML file."""
    path = Path(file_path).absolute()
    try:
        text = path.read_text()
    except FileNotFoundError:
        raise ValidationError(f"orchestration file not found: {path}") from None

    try:
        return parse_orchestration(text)
    except ValidationError as e:
        raise ValidationError(f"invalid orchestration configuration {path}: {e}") from e


def create_execution_plan(config: OrchestrationConfig) -> ExecutionPlan:
    """
    Validate a configuration and resolve it into an ordered plan.

    Raises:
        ValidationError: If validation or resolution fails; no partial plan is returned
    """
    config.validate()
    steps = DependencyGraph(config.components).topological_sort()
    logger.info(
        "Resolved group '%s' into %d step(s): %s",
        config.group,
        len(steps),
        ", ".join(step.name for step in steps),
    )
    return ExecutionPlan(group=config.group, steps=steps)


def resolve_components(components: Dict[str, Component], group: str = "default") -> ExecutionPlan:
    """Resolve a mapping of name -> Component without going through YAML."""
    return create_execution_plan(OrchestrationConfig(group=group, components=components))
