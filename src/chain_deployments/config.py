"""Project and network configuration for chain-deployments library."""

import logging
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .constants import DEFAULT_NAMESPACE, FOUNDRY_CONFIG_FILE, PROJECT_CONFIG_FILE
from .exceptions import ConfigError
from .types import NetworkConfig

logger = logging.getLogger(__name__)

# A value that is exactly one env var reference, e.g. "${SEPOLIA_RPC_URL}"
ENV_VAR_REFERENCE = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")
# Any env var reference inside a value
ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

SENDER_TYPES = ("private_key", "ledger", "trezor", "safe", "oz_governor")


def detect_env_var(raw_value: str) -> Optional[str]:
    """
    Return the variable name if a raw config value is a pure ${VAR} reference.

    >>> detect_env_var("${SEPOLIA_RPC_URL}")
    'SEPOLIA_RPC_URL'
    >>> detect_env_var("https://rpc.example.org") is None
    True
    """
    match = ENV_VAR_REFERENCE.match(raw_value.strip())
    return match.group(1) if match else None


def generate_env_var_name(network: str) -> str:
    """Suggested env var name for a network, e.g. "arb-sepolia" -> "ARB_SEPOLIA_RPC_URL"."""
    name = network.upper().replace("-", "_").replace(".", "_")
    return f"{name}_RPC_URL"


def expand_env_vars(raw_value: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """
    Expand every ${VAR} reference in a value.

    Raises:
        ConfigError: If a referenced variable is unset or empty
    """
    environ = os.environ if environ is None else environ

    def substitute(match: re.Match) -> str:
        value = environ.get(match.group(1))
        if not value:
            raise ConfigError(f"environment variable {match.group(1)} is not set")
        return value

    return ENV_VAR_PATTERN.sub(substitute, raw_value)


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"failed to parse {path}: {e}") from e


def load_rpc_endpoints(project_root: Union[Path, str]) -> Dict[str, str]:
    """
    Read foundry.toml [rpc_endpoints] without expanding env vars.

    Raises:
        ConfigError: If foundry.toml is missing or malformed
    """
    path = Path(project_root) / FOUNDRY_CONFIG_FILE
    try:
        data = _read_toml(path)
    except FileNotFoundError:
        raise ConfigError(f"{FOUNDRY_CONFIG_FILE} not found in {Path(project_root).absolute()}") from None

    endpoints = data.get("rpc_endpoints") or {}
    return {str(name): str(value) for name, value in endpoints.items()}


def resolve_network(
    project_root: Union[Path, str],
    network: str,
    environ: Optional[Mapping[str, str]] = None,
) -> NetworkConfig:
    """
    Resolve a network name to its RPC endpoint.

    Args:
        project_root: Directory containing foundry.toml
        network: Key in [rpc_endpoints]
        environ: Environment to expand from (defaults to os.environ)

    Raises:
        ConfigError: If the network is unknown or its env vars are unset
    """
    endpoints = load_rpc_endpoints(project_root)
    if network not in endpoints:
        known = ", ".join(sorted(endpoints)) or "none"
        raise ConfigError(
            f"network '{network}' not found in {FOUNDRY_CONFIG_FILE} [rpc_endpoints] (known: {known})"
        )

    raw = endpoints[network]
    return NetworkConfig(
        name=network,
        rpc_url=expand_env_vars(raw, environ),
        raw_rpc=raw,
        env_var_name=detect_env_var(raw),
    )


@dataclass
class AccountConfig:
    """A named signing entity from [accounts.<name>]."""

    name: str
    type: str
    address: str = ""
    private_key: str = ""  # usually an env var reference
    derivation_path: str = ""  # ledger / trezor
    safe: str = ""
    signer: str = ""  # account name
    governor: str = ""
    timelock: str = ""
    proposer: str = ""  # account name

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "AccountConfig":
        sender_type = data.get("type", "")
        if sender_type not in SENDER_TYPES:
            raise ConfigError(f"account '{name}' has unknown type '{sender_type}'")
        return cls(
            name=name,
            type=sender_type,
            address=data.get("address", ""),
            private_key=data.get("private_key", ""),
            derivation_path=data.get("derivation_path", ""),
            safe=data.get("safe", ""),
            signer=data.get("signer", ""),
            governor=data.get("governor", ""),
            timelock=data.get("timelock", ""),
            proposer=data.get("proposer", ""),
        )


@dataclass
class NamespaceConfig:
    """A [namespace.<name>] section: an optional foundry profile plus role -> account."""

    name: str
    profile: str = ""
    roles: Dict[str, str] = field(default_factory=dict)


def namespace_chain(namespace: str) -> List[str]:
    """
    Ancestry of a dotted namespace, most general first.

    "production.ntt.v2" -> ["default", "production", "production.ntt", "production.ntt.v2"]
    """
    if namespace == DEFAULT_NAMESPACE:
        return [DEFAULT_NAMESPACE]

    chain = [DEFAULT_NAMESPACE]
    parts = namespace.split(".")
    for i in range(1, len(parts) + 1):
        chain.append(".".join(parts[:i]))
    return chain


def _collect_namespaces(
    tables: Dict[str, Any], parent: str, namespaces: Dict[str, NamespaceConfig]
) -> None:
    # [namespace.production.ntt] parses as a table nested in "production"
    for name, raw in tables.items():
        full_name = f"{parent}.{name}" if parent else str(name)
        if not isinstance(raw, dict):
            raise ConfigError(f"[namespace.{full_name}] must be a table")

        ns = NamespaceConfig(name=full_name)
        children = {}
        for key, value in raw.items():
            if isinstance(value, dict):
                children[key] = value
            elif key == "profile":
                ns.profile = str(value)
            else:
                ns.roles[str(key)] = str(value)

        namespaces[full_name] = ns
        _collect_namespaces(children, full_name, namespaces)


@dataclass
class ProjectConfig:
    """Contents of treb.toml."""

    root: Path
    accounts: Dict[str, AccountConfig] = field(default_factory=dict)
    namespaces: Dict[str, NamespaceConfig] = field(default_factory=dict)
    fork_setup: str = ""  # script run after a fork's node is started

    def resolve_namespace(self, namespace: str) -> Dict[str, AccountConfig]:
        """
        Resolve role -> account for a namespace, inheriting from its ancestors.

        Roles pointing at unknown accounts are skipped with a warning.
        """
        roles: Dict[str, str] = {}
        for ancestor in namespace_chain(namespace):
            ns = self.namespaces.get(ancestor)
            if ns is not None:
                roles.update(ns.roles)

        resolved = {}
        for role, account_name in sorted(roles.items()):
            account = self.accounts.get(account_name)
            if account is None:
                logger.warning(
                    "Namespace '%s' role '%s' references unknown account '%s', skipping",
                    namespace,
                    role,
                    account_name,
                )
                continue
            resolved[role] = account
        return resolved

    def profile_for(self, namespace: str) -> str:
        profile = ""
        for ancestor in namespace_chain(namespace):
            ns = self.namespaces.get(ancestor)
            if ns is not None and ns.profile:
                profile = ns.profile
        return profile or DEFAULT_NAMESPACE

    @classmethod
    def from_dict(cls, root: Path, data: Dict[str, Any]) -> "ProjectConfig":
        accounts = {
            str(name): AccountConfig.from_dict(str(name), raw or {})
            for name, raw in (data.get("accounts") or {}).items()
        }

        namespaces: Dict[str, NamespaceConfig] = {}
        _collect_namespaces(data.get("namespace") or {}, "", namespaces)

        fork = data.get("fork") or {}
        return cls(
            root=root,
            accounts=accounts,
            namespaces=namespaces,
            fork_setup=str(fork.get("setup", "")),
        )


def load_project_config(project_root: Union[Path, str]) -> ProjectConfig:
    """
    Load treb.toml from a project root.

    A missing file yields an empty configuration.

    Raises:
        ConfigError: If the file is malformed
    """
    root = Path(project_root).absolute()
    try:
        data = _read_toml(root / PROJECT_CONFIG_FILE)
    except FileNotFoundError:
        logger.debug("No %s in %s, using defaults", PROJECT_CONFIG_FILE, root)
        data = {}
    return ProjectConfig.from_dict(root, data)
