"""Foundry broadcast file parsers for chain-deployments library."""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from .exceptions import ScriptExecutionError
from .types import DeploymentMethod, DeploymentType, ProxyInfo

logger = logging.getLogger(__name__)

BROADCAST_DIR = "broadcast"
LATEST_RUN_FILE = "run-latest.json"

# ERC-1967 proxy events
UPGRADED_TOPIC = "0xbc7cd75a20ee27fd9adebab32041f755214dbc6bffa90cc0225b39da2e5c2d3b"
ADMIN_CHANGED_TOPIC = "0x7e644d79422f17c01e4894b5f4f588d331ebfa28653d42ae832dc59e38c9798f"


@dataclass
class ContractFact:
    """A contract created by a broadcast transaction."""

    contract_name: str
    address: str
    method: DeploymentMethod = DeploymentMethod.CREATE
    factory: str = ""  # set for contracts created through a factory call (e.g. CreateX)
    kind: DeploymentType = DeploymentType.SINGLETON
    salt: str = ""
    proxy: Optional[ProxyInfo] = None


@dataclass
class TransactionFact:
    """One transaction of a script run, as reported by forge."""

    hash: str
    sender: str
    nonce: int = 0
    block_number: Optional[int] = None  # None until a receipt exists
    success: Optional[bool] = None  # None until a receipt exists
    function: str = ""
    contracts: List[ContractFact] = field(default_factory=list)


@dataclass
class ScriptResult:
    """Facts produced by one script run; the input to sender settlement."""

    script: str
    chain_id: int
    transactions: List[TransactionFact] = field(default_factory=list)
    returns: Dict[str, str] = field(default_factory=dict)  # script return values by name

    @property
    def contracts(self) -> List[ContractFact]:
        return [c for tx in self.transactions for c in tx.contracts]

    @property
    def failed(self) -> List[TransactionFact]:
        return [tx for tx in self.transactions if tx.success is False]


def _hex_to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    return int(str(value), 16)


def _creation_method(transaction_type: str, function: str) -> DeploymentMethod:
    if function.startswith("deployCreate3"):
        return DeploymentMethod.CREATE3
    if transaction_type == "CREATE2" or function.startswith("deployCreate2"):
        return DeploymentMethod.CREATE2
    return DeploymentMethod.CREATE


def _word_address(word: str) -> str:
    """Address held in the low 20 bytes of a 32-byte word."""
    return "0x" + word[-40:]


def _library_addresses(libraries: List[str]) -> Set[str]:
    # forge lists linked libraries as "<path>:<name>:<address>"
    return {entry.rsplit(":", 1)[-1].lower() for entry in libraries if ":" in entry}


def classify_contracts(
    contracts: List[ContractFact],
    logs: List[Dict[str, Any]],
    libraries: List[str],
) -> None:
    """
    Set kind, proxy details and salt on contracts from receipt logs.

    A contract that emits ERC-1967 Upgraded is a proxy of the upgraded-to
    address; one that also emits AdminChanged is a transparent proxy, the
    rest are UUPS. A CreateX ContractCreation(newContract, salt) log emitted
    by the contract's factory carries its salt. Addresses listed as linked
    libraries are libraries.
    """
    implementations: Dict[str, str] = {}
    admins: Dict[str, str] = {}
    salts: Dict[Tuple[str, str], str] = {}

    for log in logs:
        topics = [str(t).lower() for t in log.get("topics") or []]
        if not topics:
            continue
        emitter = (log.get("address") or "").lower()

        if topics[0] == UPGRADED_TOPIC and len(topics) >= 2:
            implementations[emitter] = _word_address(topics[1])
        elif topics[0] == ADMIN_CHANGED_TOPIC:
            # (previousAdmin, newAdmin), not indexed
            data = (log.get("data") or "").lower()
            if len(data) >= 2 + 128:
                admins[emitter] = _word_address(data[:2 + 128])
        elif len(topics) == 3:
            salts[(emitter, _word_address(topics[1]))] = topics[2]

    library_addresses = _library_addresses(libraries)

    for contract in contracts:
        address = contract.address.lower()
        if address in library_addresses:
            contract.kind = DeploymentType.LIBRARY
        if address in implementations:
            admin = admins.get(address, "")
            contract.kind = DeploymentType.PROXY
            contract.proxy = ProxyInfo(
                type="Transparent" if admin else "UUPS",
                implementation=implementations[address],
                admin=admin,
            )
        if contract.factory:
            contract.salt = salts.get((contract.factory.lower(), address), "")


def get_broadcast_path(
    project_root: Union[Path, str], script: Union[Path, str], chain_id: int
) -> Path:
    """
    Get the run-latest.json path forge writes for a script.

    Returns:
        Path to <project_root>/broadcast/<script file name>/<chain_id>/run-latest.json
    """
    return (
        Path(project_root) / BROADCAST_DIR / Path(script).name / str(chain_id) / LATEST_RUN_FILE
    )


def parse_broadcast(data: Dict[str, Any], script: str, chain_id: int) -> ScriptResult:
    """
    Turn a decoded broadcast document into facts.

    Args:
        data: Decoded run-*.json content
        script: Script path the run belongs to
        chain_id: Chain the run targeted

    Returns:
        ScriptResult with one TransactionFact per broadcast transaction

    Raises:
        ScriptExecutionError: If a transaction entry is missing its hash
    """
    receipts = {
        r.get("transactionHash", "").lower(): r for r in data.get("receipts") or []
    }

    result = ScriptResult(
        script=str(script),
        chain_id=chain_id,
        returns={
            str(name): str((value or {}).get("value", ""))
            for name, value in (data.get("returns") or {}).items()
        },
    )

    for entry in data.get("transactions") or []:
        tx_hash = entry.get("hash")
        if not tx_hash:
            raise ScriptExecutionError(f"broadcast for {script} has a transaction without hash")

        tx = entry.get("transaction") or {}
        transaction_type = entry.get("transactionType") or ""
        function = entry.get("function") or ""

        fact = TransactionFact(
            hash=tx_hash,
            sender=tx.get("from", ""),
            nonce=_hex_to_int(tx.get("nonce")) or 0,
            function=function,
        )

        receipt = receipts.get(tx_hash.lower())
        if receipt is not None:
            fact.block_number = _hex_to_int(receipt.get("blockNumber"))
            fact.success = _hex_to_int(receipt.get("status")) == 1

        if transaction_type in ("CREATE", "CREATE2") and entry.get("contractAddress"):
            fact.contracts.append(
                ContractFact(
                    contract_name=entry.get("contractName") or "",
                    address=entry["contractAddress"],
                    method=_creation_method(transaction_type, function),
                )
            )

        # Contracts created inside a call, e.g. through CreateX
        for extra in entry.get("additionalContracts") or []:
            address = extra.get("address") or extra.get("contractAddress")
            if not address:
                continue
            fact.contracts.append(
                ContractFact(
                    contract_name=extra.get("contractName") or "",
                    address=address,
                    method=_creation_method(extra.get("transactionType") or "", function),
                    factory=tx.get("to") or "",
                )
            )

        result.transactions.append(fact)

    classify_contracts(
        result.contracts,
        [log for receipt in receipts.values() for log in receipt.get("logs") or []],
        data.get("libraries") or [],
    )

    logger.debug(
        "Parsed broadcast for %s: %d transaction(s), %d contract(s)",
        script,
        len(result.transactions),
        len(result.contracts),
    )
    return result


def parse_broadcast_file(file_path: Path, script: str, chain_id: int) -> ScriptResult:
    """
    Parse a forge broadcast file.

    Raises:
        ScriptExecutionError: If the file is missing or not valid JSON
    """
    try:
        with open(file_path) as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ScriptExecutionError(f"broadcast file not found: {file_path}") from None
    except json.JSONDecodeError as e:
        raise ScriptExecutionError(f"failed to parse broadcast file {file_path}: {e}") from e

    return parse_broadcast(data, script, chain_id)


def parse_latest_broadcast(
    project_root: Union[Path, str], script: str, chain_id: int
) -> ScriptResult:
    """Parse the most recent run of a script on a chain."""
    return parse_broadcast_file(get_broadcast_path(project_root, script, chain_id), script, chain_id)
