"""Unit tests for custom exception classes."""

import pytest

from chain_deployments.exceptions import (
    AmbiguousDeploymentError,
    ConfigError,
    ConflictError,
    CrashError,
    DeploymentError,
    DeploymentNotFoundError,
    NodeUnavailableError,
    RPCError,
    ScriptExecutionError,
    SetupFailure,
    StateError,
    ValidationError,
)


class TestExceptionCatching:
    """Test that exceptions can be caught as their base types."""

    @pytest.mark.parametrize(
        "exc_class",
        [
            ValidationError,
            ConfigError,
            ConflictError,
            StateError,
            SetupFailure,
            DeploymentNotFoundError,
            RPCError,
            NodeUnavailableError,
            ScriptExecutionError,
        ],
    )
    def test_catch_as_deployment_error(self, exc_class):
        """Test that every error can be caught as DeploymentError."""
        with pytest.raises(DeploymentError):
            raise exc_class("test")

    def test_catch_validation_error_as_value_error(self):
        """Test that ValidationError is a ValueError."""
        with pytest.raises(ValueError):
            raise ValidationError("test")

    def test_catch_config_error_as_validation_error(self):
        """Test that ConfigError is a ValidationError."""
        with pytest.raises(ValidationError):
            raise ConfigError("test")

    def test_catch_not_found_as_lookup_error(self):
        """Test that NotFoundError is a LookupError."""
        with pytest.raises(LookupError):
            raise DeploymentNotFoundError("test")

    def test_catch_node_unavailable_as_rpc_error(self):
        """Test that NodeUnavailableError is an RPCError."""
        with pytest.raises(RPCError):
            raise NodeUnavailableError("test")

    def test_catch_crash_as_state_error(self):
        """Test that CrashError is a StateError."""
        with pytest.raises(StateError):
            raise CrashError("sepolia")


class TestExceptionMessages:
    """Test exception messages."""

    def test_crash_error_names_recovery_commands(self):
        """Test that CrashError names both recovery commands."""
        err = CrashError("sepolia")
        message = str(err)

        assert err.network == "sepolia"
        assert "crashed" in message
        assert "fork restart sepolia" in message
        assert "fork exit sepolia" in message

    def test_crash_error_detail(self):
        """Test that CrashError includes the underlying detail."""
        assert str(CrashError("sepolia", "connection refused")).endswith(": connection refused")

    def test_ambiguous_lists_candidates(self):
        """Test that AmbiguousDeploymentError lists its candidates."""
        err = AmbiguousDeploymentError("Counter", ["a/1/Counter at 0x1", "b/1/Counter at 0x2"])

        assert err.candidates == ["a/1/Counter at 0x1", "b/1/Counter at 0x2"]
        assert "  - a/1/Counter at 0x1" in str(err)
        assert "  - b/1/Counter at 0x2" in str(err)
