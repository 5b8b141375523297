"""Unit tests for orchestration parsing and dependency resolution."""

from pathlib import Path

import pytest

from chain_deployments.exceptions import ValidationError
from chain_deployments.orchestration import (
    DependencyGraph,
    OrchestrationConfig,
    create_execution_plan,
    parse_orchestration,
    parse_orchestration_file,
    resolve_components,
)
from chain_deployments.types import Component


def components(**deps):
    """Build {name: Component} from name=[deps...] keyword arguments."""
    return {
        name: Component(name=name, script=f"script/Deploy{name}.s.sol", deps=list(d))
        for name, d in deps.items()
    }


class TestValidate:
    """Test OrchestrationConfig.validate."""

    def test_requires_group(self):
        """Test that a group name is required."""
        config = OrchestrationConfig(group="", components=components(A=[]))
        with pytest.raises(ValidationError, match="group name is required"):
            config.validate()

    def test_requires_components(self):
        """Test that at least one component is required."""
        config = OrchestrationConfig(group="core")
        with pytest.raises(ValidationError, match="at least one component is required"):
            config.validate()

    def test_requires_script(self):
        """Test that every component needs a script."""
        config = OrchestrationConfig(group="core", components={"A": Component(name="A", script="")})
        with pytest.raises(ValidationError, match="component 'A' must specify a script"):
            config.validate()

    def test_rejects_self_dependency(self):
        """Test that a component cannot depend on itself."""
        config = OrchestrationConfig(group="core", components=components(A=["A"]))
        with pytest.raises(ValidationError, match="component 'A' cannot depend on itself"):
            config.validate()

    def test_rejects_missing_dependency(self):
        """Test that dependencies must name known components."""
        config = OrchestrationConfig(group="core", components=components(A=["Ghost"]))
        with pytest.raises(
            ValidationError, match="component 'A' depends on non-existent component 'Ghost'"
        ):
            config.validate()

    def test_self_dependency_reported_before_cycle(self):
        """Self dependency is a validation error, not a cycle."""
        config = OrchestrationConfig(group="core", components=components(A=["A"], B=[]))
        with pytest.raises(ValidationError, match="cannot depend on itself"):
            create_execution_plan(config)


class TestTopologicalSort:
    """Test DependencyGraph.topological_sort (Kahn's algorithm)."""

    def test_independent_components_sorted_lexically(self):
        """Test that independent components come out in name order."""
        steps = DependencyGraph(components(C=[], A=[], B=[])).topological_sort()
        assert [s.name for s in steps] == ["A", "B", "C"]

    def test_dependencies_come_first(self):
        """Test that dependencies run before their dependents."""
        graph = DependencyGraph(components(Vault=["Token", "Oracle"], Token=[], Oracle=["Token"]))
        names = [s.name for s in graph.topological_sort()]
        assert names == ["Token", "Oracle", "Vault"]

    def test_every_dependency_precedes_its_dependent(self):
        """Test the ordering over a larger graph."""
        comps = components(
            E=["B", "D"], D=["A"], C=[], B=["A", "C"], A=[], F=["E"], G=[]
        )
        names = [s.name for s in DependencyGraph(comps).topological_sort()]

        assert sorted(names) == sorted(comps)
        for name, component in comps.items():
            for dep in component.deps:
                assert names.index(dep) < names.index(name)

    def test_ready_queue_resorted_when_node_becomes_ready(self):
        """A newly ready 'A' overtakes an already queued 'Z'."""
        names = [
            s.name for s in DependencyGraph(components(Z=[], B=[], A=["B"])).topological_sort()
        ]
        assert names == ["B", "A", "Z"]

    def test_result_is_deterministic(self):
        """Test that repeated sorts give the same order."""
        comps = components(C=["A"], B=["A"], A=[], D=["B", "C"])
        first = [s.name for s in DependencyGraph(comps).topological_sort()]
        for _ in range(5):
            assert [s.name for s in DependencyGraph(comps).topological_sort()] == first

    def test_two_node_cycle(self):
        """Test that a two-node cycle is rejected."""
        graph = DependencyGraph(components(A=["B"], B=["A"]))
        with pytest.raises(ValidationError, match=r"circular dependency.*\['A', 'B'\]"):
            graph.topological_sort()

    def test_three_node_cycle_names_only_cycle_members(self):
        """Test that the cycle error names only the components in the cycle."""
        graph = DependencyGraph(components(A=["C"], B=["A"], C=["B"], D=[]))
        with pytest.raises(ValidationError) as exc_info:
            graph.topological_sort()
        assert "['A', 'B', 'C']" in str(exc_info.value)
        assert "D" not in str(exc_info.value)

    def test_steps_carry_script_env_and_dependencies(self):
        """Test that plan steps carry script, env and dependencies."""
        comps = components(A=[], B=["A"])
        comps["B"].env = {"LABEL": "main"}
        steps = DependencyGraph(comps).topological_sort()

        assert steps[1].script == "script/DeployB.s.sol"
        assert steps[1].env == {"LABEL": "main"}
        assert steps[1].dependencies == ["A"]


class TestParseOrchestration:
    """Test YAML parsing of orchestration files."""

    def test_parses_fixture(self, fixtures_dir: Path):
        """Test parsing an orchestration file."""
        config = parse_orchestration_file(fixtures_dir / "orchestration" / "core.yaml")

        assert config.group == "core"
        assert set(config.components) == {"Token", "Oracle", "Vault"}
        assert config.components["Vault"].deps == ["Token", "Oracle"]
        assert config.components["Vault"].env == {"VAULT_LABEL": "main"}

    def test_plan_from_fixture(self, fixtures_dir: Path):
        """Test building a plan from an orchestration file."""
        plan = create_execution_plan(
            parse_orchestration_file(fixtures_dir / "orchestration" / "core.yaml")
        )
        assert plan.group == "core"
        assert plan.names == ["Token", "Oracle", "Vault"]

    def test_cycle_fixture_fails_without_partial_plan(self, fixtures_dir: Path):
        """Test that a cyclic file yields no plan at all."""
        config = parse_orchestration_file(fixtures_dir / "orchestration" / "cycle.yaml")
        with pytest.raises(ValidationError, match="circular dependency"):
            create_execution_plan(config)

    def test_missing_file(self, tmp_path: Path):
        """Test that a missing file is an error."""
        with pytest.raises(ValidationError, match="orchestration file not found"):
            parse_orchestration_file(tmp_path / "nope.yaml")

    def test_invalid_yaml(self):
        """Test that invalid YAML is an error."""
        with pytest.raises(ValidationError, match="failed to parse YAML"):
            parse_orchestration("group: [unclosed")

    def test_invalid_file_mentions_path(self, tmp_path: Path):
        """Test that file errors mention the path."""
        path = tmp_path / "bad.yaml"
        path.write_text("group: core\ncomponents: {}\n")
        with pytest.raises(ValidationError, match="bad.yaml"):
            parse_orchestration_file(path)

    def test_non_mapping_document(self):
        """Test that a non-mapping document is an error."""
        with pytest.raises(ValidationError, match="must contain a mapping"):
            parse_orchestration("- just\n- a list\n")


class TestResolveComponents:
    """Test the resolve_components function."""

    def test_default_group(self):
        """Test that an ungrouped plan is named default."""
        plan = resolve_components(components(B=["A"], A=[]))
        assert plan.group == "default"
        assert plan.names == ["A", "B"]
