"""Registry store for chain-deployments library."""

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from .documents import load_document, save_documents
from .exceptions import (
    AmbiguousDeploymentError,
    ConflictError,
    DeploymentNotFoundError,
    NotFoundError,
    ValidationError,
)
from .paths import get_registry_paths, resolve_data_dir
from .types import (
    Deployment,
    DeploymentType,
    SafeTransaction,
    Transaction,
    TransactionStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

DeploymentSelector = Callable[[List[Deployment], str], Deployment]


@dataclass
class _RegistryState:
    deployments: Dict[str, Deployment] = field(default_factory=dict)
    transactions: Dict[str, Transaction] = field(default_factory=dict)
    safe_transactions: Dict[str, SafeTransaction] = field(default_factory=dict)


def parse_reference(reference: str) -> tuple[str, str, str, Optional[int]]:
    """
    Split a deployment reference into its parts.

    Supported formats:
    - "Counter"
    - "Counter:v2"
    - "staging/Counter"
    - "11155111/Counter"
    - "staging/11155111/Counter:v2"

    Returns:
        Tuple of (contract_name, label, namespace, chain_id); missing parts
        are "" (or None for chain_id)
    """
    base, _, label = reference.partition(":")
    segments = base.split("/")

    namespace = ""
    chain_id: Optional[int] = None

    match len(segments):
        case 1:
            contract_name = segments[0]
        case 2:
            if segments[0].isdigit():
                chain_id = int(segments[0])
            else:
                namespace = segments[0]
            contract_name = segments[1]
        case 3:
            namespace = segments[0]
            if not segments[1].isdigit():
                raise ValidationError(f"invalid chain id in reference '{reference}'")
            chain_id = int(segments[1])
            contract_name = segments[2]
        case _:
            raise ValidationError(f"invalid deployment reference '{reference}'")

    return contract_name, label, namespace, chain_id


def _is_address(value: str) -> bool:
    return value.startswith("0x") and len(value) == 42


class RegistryStore:
    """
    Deployments, transactions and Safe proposals recorded for one project.

    Every mutation is validated against a copy of the in-memory state and
    written to disk before the call returns, so the documents on disk always
    reflect the last successful call.
    """

    def __init__(self, data_dir: Optional[Union[Path, str]] = None):
        """
        Initialize the registry store.

        Args:
            data_dir: Directory holding the registry documents
                      If None, uses ./.treb
        """
        self.data_dir = resolve_data_dir(data_dir)
        (
            self.deployments_path,
            self.transactions_path,
            self.safe_transactions_path,
        ) = get_registry_paths(self.data_dir)
        self._state = _RegistryState()
        self.reload()

    def reload(self) -> None:
        """Re-read all documents from disk (e.g. after a fork revert restored them)."""
        self._state = _RegistryState(
            deployments={
                key: Deployment.from_dict(value)
                for key, value in load_document(self.deployments_path).items()
            },
            transactions={
                key: Transaction.from_dict(value)
                for key, value in load_document(self.transactions_path).items()
            },
            safe_transactions={
                key: SafeTransaction.from_dict(value)
                for key, value in load_document(self.safe_transactions_path).items()
            },
        )

    def _save(self, state: _RegistryState) -> None:
        save_documents(
            {
                self.deployments_path: {
                    key: d.to_dict() for key, d in sorted(state.deployments.items())
                },
                self.transactions_path: {
                    key: t.to_dict() for key, t in sorted(state.transactions.items())
                },
                self.safe_transactions_path: {
                    key: s.to_dict() for key, s in sorted(state.safe_transactions.items())
                },
            }
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def commit_step(
        self,
        transactions: Iterable[Transaction] = (),
        deployments: Iterable[Deployment] = (),
        safe_transactions: Iterable[SafeTransaction] = (),
    ) -> List[Deployment]:
        """
        Record everything one step produced, all or nothing.

        Transactions are applied first, then deployments, then Safe proposals,
        so deployments and proposals may reference transactions from the same
        step.

        Validation runs against a copy, so a rejected step changes nothing.
        On disk all three documents are written out before any of them
        replaces its predecessor; only a failed rename can leave them out
        of step.

        Returns:
            The stored deployments (existing records for idempotent re-runs)

        Raises:
            ConflictError: On an identity collision or an illegal status change
            ValidationError: On a dangling reference
        """
        state = copy.deepcopy(self._state)
        touched_tx_ids = set()

        for tx in transactions:
            self._apply_transaction(state, copy.deepcopy(tx))
            touched_tx_ids.add(tx.id)

        stored = []
        for deployment in deployments:
            record = self._apply_deployment(state, copy.deepcopy(deployment))
            stored.append(record)
            # An idempotent re-record keeps the existing record and its transaction
            touched_tx_ids.add(record.transaction_id)

        for safe_tx in safe_transactions:
            self._apply_safe_transaction(state, copy.deepcopy(safe_tx))

        for tx_id in sorted(touched_tx_ids):
            for deployment_id in state.transactions[tx_id].deployments:
                if deployment_id not in state.deployments:
                    raise ValidationError(
                        f"transaction '{tx_id}' references unknown deployment '{deployment_id}'"
                    )

        self._save(state)
        self._state = state
        return stored

    def record_transaction(self, transaction: Transaction) -> Transaction:
        """Insert or update a transaction."""
        self.commit_step(transactions=[transaction])
        return self.get_transaction(transaction.id)

    def record_deployment(self, deployment: Deployment) -> Deployment:
        """
        Record a deployment idempotently.

        Re-recording an identity at the same address is a no-op and returns
        the existing record. A different address for an existing identity is
        rejected rather than overwritten.

        Raises:
            ConflictError: If the identity exists at a different address
            ValidationError: If the owning transaction is not recorded
        """
        return self.commit_step(deployments=[deployment])[0]

    def record_safe_transaction(self, safe_transaction: SafeTransaction) -> SafeTransaction:
        """Insert or update a Safe proposal."""
        self.commit_step(safe_transactions=[safe_transaction])
        return self.get_safe_transaction(safe_transaction.safe_tx_hash)

    def update_transaction_status(
        self,
        transaction_id: str,
        status: TransactionStatus,
        block_number: Optional[int] = None,
    ) -> Transaction:
        """Move a transaction to a new status, respecting terminal states."""
        tx = copy.deepcopy(self.get_transaction(transaction_id))
        tx.status = status
        if block_number is not None:
            tx.block_number = block_number
        return self.record_transaction(tx)

    def mark_safe_transaction_executed(
        self,
        safe_tx_hash: str,
        execution_tx_hash: str,
        block_number: Optional[int] = None,
    ) -> SafeTransaction:
        """
        Record that a Safe proposal was executed on-chain.

        Marks the proposal and every transaction it carries as EXECUTED.
        """
        safe_tx = copy.deepcopy(self.get_safe_transaction(safe_tx_hash))
        safe_tx.status = TransactionStatus.EXECUTED
        safe_tx.execution_tx_hash = execution_tx_hash
        safe_tx.executed_at = utc_now()

        transactions = []
        for tx_id in safe_tx.transaction_ids:
            tx = copy.deepcopy(self.get_transaction(tx_id))
            tx.status = TransactionStatus.EXECUTED
            if block_number is not None:
                tx.block_number = block_number
            transactions.append(tx)

        self.commit_step(transactions=transactions, safe_transactions=[safe_tx])
        logger.info("Safe transaction %s executed in %s", safe_tx_hash, execution_tx_hash)
        return self.get_safe_transaction(safe_tx_hash)

    def tag_deployment(self, deployment_id: str, tag: str) -> Deployment:
        """Add a tag to a deployment."""
        deployment = self.get_deployment(deployment_id)
        if tag in deployment.tags:
            raise ConflictError(f"deployment '{deployment_id}' already has tag '{tag}'")

        state = copy.deepcopy(self._state)
        stored = state.deployments[deployment_id]
        stored.tags.append(tag)
        stored.updated_at = utc_now()
        self._save(state)
        self._state = state
        return stored

    def untag_deployment(self, deployment_id: str, tag: str) -> Deployment:
        """Remove a tag from a deployment."""
        deployment = self.get_deployment(deployment_id)
        if tag not in deployment.tags:
            raise NotFoundError(f"deployment '{deployment_id}' has no tag '{tag}'")

        state = copy.deepcopy(self._state)
        stored = state.deployments[deployment_id]
        stored.tags.remove(tag)
        stored.updated_at = utc_now()
        self._save(state)
        self._state = state
        return stored

    def delete_deployment(self, deployment_id: str) -> None:
        """
        Remove a deployment and its back-reference from the owning transaction.

        Used when pruning records whose contract no longer exists on-chain.
        """
        self.get_deployment(deployment_id)

        state = copy.deepcopy(self._state)
        deployment = state.deployments.pop(deployment_id)
        tx = state.transactions.get(deployment.transaction_id)
        if tx is not None and deployment_id in tx.deployments:
            tx.deployments.remove(deployment_id)
        self._save(state)
        self._state = state
        logger.info("Deleted deployment %s", deployment_id)

    def _apply_transaction(self, state: _RegistryState, tx: Transaction) -> None:
        existing = state.transactions.get(tx.id)
        if existing is None:
            if not tx.created_at:
                tx.created_at = utc_now()
            state.transactions[tx.id] = tx
            return

        if existing.status.is_terminal and tx.status != existing.status:
            raise ConflictError(
                f"transaction '{tx.id}' is already {existing.status.value}, "
                f"cannot change it to {tx.status.value}"
            )

        # Keep the union of deployment ids, existing ones first
        tx.deployments = existing.deployments + [
            d for d in tx.deployments if d not in existing.deployments
        ]
        tx.created_at = existing.created_at or tx.created_at or utc_now()
        state.transactions[tx.id] = tx

    def _apply_deployment(self, state: _RegistryState, deployment: Deployment) -> Deployment:
        deployment_id = deployment.id
        existing = state.deployments.get(deployment_id)

        if existing is not None:
            if existing.address.lower() == deployment.address.lower():
                logger.debug(
                    "Deployment %s already recorded at %s, skipping",
                    deployment_id,
                    existing.address,
                )
                return existing
            raise ConflictError(
                f"deployment '{deployment_id}' already exists at {existing.address}, "
                f"refusing to overwrite it with {deployment.address}"
            )

        for other in state.deployments.values():
            if (
                other.chain_id == deployment.chain_id
                and other.address.lower() == deployment.address.lower()
            ):
                raise ConflictError(
                    f"address {deployment.address} on chain {deployment.chain_id} "
                    f"is already recorded as '{other.id}'"
                )

        tx = state.transactions.get(deployment.transaction_id)
        if tx is None:
            raise ValidationError(
                f"deployment '{deployment_id}' references unknown transaction "
                f"'{deployment.transaction_id}'"
            )

        now = utc_now()
        deployment.created_at = deployment.created_at or now
        deployment.updated_at = now
        state.deployments[deployment_id] = deployment
        if deployment_id not in tx.deployments:
            tx.deployments.append(deployment_id)

        logger.info("Recorded deployment %s at %s", deployment_id, deployment.address)
        return deployment

    def _apply_safe_transaction(self, state: _RegistryState, safe_tx: SafeTransaction) -> None:
        for tx_id in safe_tx.transaction_ids:
            if tx_id not in state.transactions:
                raise ValidationError(
                    f"safe transaction '{safe_tx.safe_tx_hash}' references unknown "
                    f"transaction '{tx_id}'"
                )

        existing = state.safe_transactions.get(safe_tx.safe_tx_hash)
        if existing is not None:
            if existing.status.is_terminal and safe_tx.status != existing.status:
                raise ConflictError(
                    f"safe transaction '{safe_tx.safe_tx_hash}' is already "
                    f"{existing.status.value}"
                )
            safe_tx.proposed_at = existing.proposed_at or safe_tx.proposed_at

        if not safe_tx.proposed_at:
            safe_tx.proposed_at = utc_now()
        state.safe_transactions[safe_tx.safe_tx_hash] = safe_tx

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_deployments(
        self,
        namespace: Optional[str] = None,
        chain_id: Optional[int] = None,
        contract_name: Optional[str] = None,
        label: Optional[str] = None,
        type: Optional[DeploymentType] = None,
        tag: Optional[str] = None,
        fork: Optional[bool] = None,
    ) -> List[Deployment]:
        """
        List deployments matching every given filter, sorted by id.

        Args:
            namespace: Only this namespace
            chain_id: Only this chain
            contract_name: Only this contract
            label: Only this label
            type: Only this deployment type
            tag: Only deployments carrying this tag
            fork: True for fork-only records, False to exclude them
        """
        result = []
        for deployment_id in sorted(self._state.deployments):
            d = self._state.deployments[deployment_id]
            if namespace is not None and d.namespace != namespace:
                continue
            if chain_id is not None and d.chain_id != chain_id:
                continue
            if contract_name is not None and d.contract_name != contract_name:
                continue
            if label is not None and d.label != label:
                continue
            if type is not None and d.type != type:
                continue
            if tag is not None and tag not in d.tags:
                continue
            if fork is not None and d.fork != fork:
                continue
            result.append(d)
        return result

    def has_deployment(self, deployment_id: str) -> bool:
        return deployment_id in self._state.deployments

    def get_deployment(self, deployment_id: str) -> Deployment:
        """
        Get a deployment by identity key.

        Raises:
            DeploymentNotFoundError: If no such deployment is recorded
        """
        try:
            return self._state.deployments[deployment_id]
        except KeyError:
            raise DeploymentNotFoundError(f"deployment '{deployment_id}' not found") from None

    def get_deployment_by_address(self, chain_id: int, address: str) -> Deployment:
        """
        Get the deployment living at an address on a chain.

        Raises:
            DeploymentNotFoundError: If no deployment is recorded at that address
        """
        for d in self._state.deployments.values():
            if d.chain_id == chain_id and d.address.lower() == address.lower():
                return d
        raise DeploymentNotFoundError(
            f"deployment at address {address} not found on chain {chain_id}"
        )

    def resolve_deployment(
        self,
        reference: str,
        namespace: Optional[str] = None,
        chain_id: Optional[int] = None,
        interactive: bool = False,
        selector: Optional[DeploymentSelector] = None,
    ) -> Deployment:
        """
        Resolve an identity key, address, or short name to one deployment.

        Args:
            reference: Deployment id, address, or short reference (see parse_reference)
            namespace: Default namespace when the reference doesn't name one
            chain_id: Default chain when the reference doesn't name one
            interactive: Whether a selector may be used to disambiguate
            selector: Callback picking one of several matches

        Raises:
            DeploymentNotFoundError: If nothing matches
            AmbiguousDeploymentError: If several match and no disambiguation is allowed
        """
        candidates = self._find_deployments(reference, namespace, chain_id)

        if not candidates:
            raise DeploymentNotFoundError(f"no deployment found matching '{reference}'")
        if len(candidates) == 1:
            return candidates[0]

        if interactive and selector is not None:
            return selector(candidates, reference)

        raise AmbiguousDeploymentError(
            reference,
            sorted(f"{d.id} at {d.address}" for d in candidates),
        )

    def _find_deployments(
        self,
        reference: str,
        namespace: Optional[str],
        chain_id: Optional[int],
    ) -> List[Deployment]:
        if reference in self._state.deployments:
            return [self._state.deployments[reference]]

        if _is_address(reference):
            return [
                d
                for d in self.list_deployments(chain_id=chain_id)
                if d.address.lower() == reference.lower()
            ]

        contract_name, label, ref_namespace, ref_chain_id = parse_reference(reference)

        return self.list_deployments(
            namespace=ref_namespace or namespace,
            chain_id=ref_chain_id if ref_chain_id is not None else chain_id,
            contract_name=contract_name,
            label=label if label else None,
        )

    def list_transactions(
        self,
        chain_id: Optional[int] = None,
        status: Optional[TransactionStatus] = None,
        namespace: Optional[str] = None,
    ) -> List[Transaction]:
        result = []
        for tx_id in sorted(self._state.transactions):
            tx = self._state.transactions[tx_id]
            if chain_id is not None and tx.chain_id != chain_id:
                continue
            if status is not None and tx.status != status:
                continue
            if namespace is not None and tx.environment != namespace:
                continue
            result.append(tx)
        return result

    def get_transaction(self, transaction_id: str) -> Transaction:
        try:
            return self._state.transactions[transaction_id]
        except KeyError:
            raise NotFoundError(f"transaction '{transaction_id}' not found") from None

    def list_safe_transactions(
        self,
        chain_id: Optional[int] = None,
        status: Optional[TransactionStatus] = None,
        safe_address: Optional[str] = None,
    ) -> List[SafeTransaction]:
        result = []
        for safe_tx_hash in sorted(self._state.safe_transactions):
            safe_tx = self._state.safe_transactions[safe_tx_hash]
            if chain_id is not None and safe_tx.chain_id != chain_id:
                continue
            if status is not None and safe_tx.status != status:
                continue
            if safe_address is not None and safe_tx.safe_address.lower() != safe_address.lower():
                continue
            result.append(safe_tx)
        return result

    def get_safe_transaction(self, safe_tx_hash: str) -> SafeTransaction:
        try:
            return self._state.safe_transactions[safe_tx_hash]
        except KeyError:
            raise NotFoundError(f"safe transaction '{safe_tx_hash}' not found") from None

    def pending_safe_transactions(self) -> List[SafeTransaction]:
        """Safe proposals still waiting for signatures or execution."""
        return [
            s
            for s in self.list_safe_transactions()
            if s.status in (TransactionStatus.PENDING, TransactionStatus.QUEUED)
        ]
