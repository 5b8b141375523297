"""Custom exception classes for chain-deployments library."""


class DeploymentError(Exception):
    """Base exception for deployment-related errors."""

    pass


class ValidationError(DeploymentError, ValueError):
    """Raised when input is malformed (bad dependency graph, missing field, bad reference)."""

    pass


class ConfigError(ValidationError):
    """Raised when project or network configuration is missing or invalid."""

    pass


class ConflictError(DeploymentError):
    """Raised when a write would contradict existing state (active fork, address collision)."""

    pass


class StateError(DeploymentError):
    """Raised when an operation is not valid in the current state (no fork, nothing to revert)."""

    pass


class CrashError(StateError):
    """Raised when the forked node process for a network is no longer alive."""

    def __init__(self, network: str, detail: str = ""):
        self.network = network
        message = (
            f"fork for network '{network}' has crashed (node process is not running). "
            f"Run 'fork restart {network}' to start a fresh fork or "
            f"'fork exit {network}' to discard it"
        )
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class SetupFailure(DeploymentError):
    """Raised when the operator-supplied fork setup script fails."""

    pass


class NotFoundError(DeploymentError, LookupError):
    """Raised when a registry record does not exist."""

    pass


class DeploymentNotFoundError(NotFoundError):
    """Raised when a deployment reference matches nothing in the registry."""

    pass


class AmbiguousDeploymentError(DeploymentError, LookupError):
    """Raised when a deployment reference matches more than one deployment."""

    def __init__(self, reference: str, candidates: list[str]):
        self.reference = reference
        self.candidates = candidates
        listing = "\n".join(f"  - {c}" for c in candidates)
        super().__init__(
            f"multiple deployments found matching '{reference}', please be more specific:\n{listing}"
        )


class RPCError(DeploymentError, RuntimeError):
    """Raised when a JSON-RPC call returns an error or an unexpected payload."""

    pass


class NodeUnavailableError(RPCError):
    """Raised when a JSON-RPC endpoint cannot be reached or times out."""

    pass


class ScriptExecutionError(DeploymentError, RuntimeError):
    """Raised when a deployment script fails, times out, or produces no usable output."""

    pass
