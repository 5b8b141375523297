"""Sender variants and their settlement rules for chain-deployments library."""

import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union

from .config import AccountConfig, ProjectConfig
from .exceptions import ConfigError, ScriptExecutionError
from .parsers import ContractFact, ScriptResult, TransactionFact
from .types import (
    ArtifactInfo,
    Deployment,
    DeploymentStrategy,
    SafeContext,
    SafeTransaction,
    Transaction,
    TransactionStatus,
    make_transaction_id,
)

logger = logging.getLogger(__name__)


@dataclass
class StepRecords:
    """Everything one step wants to commit to the registry."""

    transactions: List[Transaction] = field(default_factory=list)
    deployments: List[Deployment] = field(default_factory=list)
    safe_transactions: List[SafeTransaction] = field(default_factory=list)


@dataclass
class SettlementContext:
    """Where the facts being settled belong."""

    namespace: str
    label: str = ""
    default_contract_name: str = ""  # used when forge reports no name
    fork: bool = False


class Sender:
    """
    A signing entity, dispatched on its configured type.

    Subclasses decide which status the step's transactions get and which
    extra records (Safe proposals) come with them.
    """

    type: ClassVar[str] = ""

    def __init__(self, account: AccountConfig):
        self.account = account

    @property
    def name(self) -> str:
        return self.account.name

    @classmethod
    def from_config(
        cls,
        name: str,
        cfg: Union[AccountConfig, Dict[str, Any]],
    ) -> "Sender":
        """
        Build the sender variant for an account.

        Args:
            name: Account name
            cfg: AccountConfig or its raw [accounts.<name>] table

        Raises:
            ConfigError: On an unknown type or missing required field
        """
        account = cfg if isinstance(cfg, AccountConfig) else AccountConfig.from_dict(name, cfg)

        match account.type:
            case "private_key" | "ledger" | "trezor":
                return PrivateKeySender(account)
            case "safe":
                return SafeSender(account)
            case "oz_governor":
                return GovernorSender(account)
            case _:
                raise ConfigError(f"account '{name}' has unknown type '{account.type}'")

    def transaction_status(self, fact: TransactionFact) -> TransactionStatus:
        return TransactionStatus.PENDING

    def settle(self, result: ScriptResult, context: SettlementContext) -> StepRecords:
        """
        Turn a script run's facts into registry records.

        Contracts from failed transactions are not recorded.
        """
        records = StepRecords()

        for fact in result.transactions:
            status = self.transaction_status(fact)
            tx = Transaction(
                chain_id=result.chain_id,
                hash=fact.hash,
                status=status,
                sender=fact.sender or self.account.address,
                nonce=fact.nonce,
                block_number=fact.block_number if status == TransactionStatus.EXECUTED else None,
                environment=context.namespace,
            )
            records.transactions.append(tx)

            if status == TransactionStatus.FAILED:
                logger.warning("Transaction %s failed, skipping its contracts", fact.hash)
                continue

            for contract in fact.contracts:
                records.deployments.append(self._deployment(result, tx, contract, context))

        return records

    def _deployment(
        self,
        result: ScriptResult,
        tx: Transaction,
        contract: ContractFact,
        context: SettlementContext,
    ) -> Deployment:
        contract_name = contract.contract_name or context.default_contract_name
        if not contract_name:
            raise ScriptExecutionError(
                f"cannot name contract at {contract.address} created by {tx.hash}"
            )
        return Deployment(
            namespace=context.namespace,
            chain_id=result.chain_id,
            contract_name=contract_name,
            label=context.label,
            address=contract.address,
            type=contract.kind,
            transaction_id=make_transaction_id(tx.hash),
            deployment_strategy=DeploymentStrategy(
                method=contract.method, salt=contract.salt, factory=contract.factory
            ),
            proxy_info=contract.proxy,
            artifact=ArtifactInfo(script_path=result.script),
            fork=context.fork,
        )


class PrivateKeySender(Sender):
    """Key-based signer (raw private key, Ledger or Trezor); transactions land directly."""

    type = "private_key"

    @property
    def derivation_path(self) -> str:
        return self.account.derivation_path

    def transaction_status(self, fact: TransactionFact) -> TransactionStatus:
        if fact.success is None:
            return TransactionStatus.PENDING
        return TransactionStatus.EXECUTED if fact.success else TransactionStatus.FAILED


class SafeSender(Sender):
    """
    Safe multisig. The script proposes a batch; nothing executes until the
    owners sign, so transactions stay PENDING under one SafeTransaction.

    The script must return the proposal hash as `safeTxHash`.
    """

    type = "safe"

    def __init__(self, account: AccountConfig):
        if not account.safe:
            raise ConfigError(f"safe account '{account.name}' requires 'safe' address")
        if not account.signer:
            raise ConfigError(f"safe account '{account.name}' requires 'signer'")
        super().__init__(account)

    def settle(self, result: ScriptResult, context: SettlementContext) -> StepRecords:
        records = super().settle(result, context)
        if not records.transactions:
            return records

        safe_tx_hash = result.returns.get("safeTxHash")
        if not safe_tx_hash:
            raise ScriptExecutionError(
                f"{result.script} ran as Safe {self.account.safe} but returned no safeTxHash"
            )

        for index, tx in enumerate(records.transactions):
            tx.safe_context = SafeContext(
                safe_address=self.account.safe,
                safe_tx_hash=safe_tx_hash,
                batch_index=index,
                proposer_address=tx.sender,
            )

        records.safe_transactions.append(
            SafeTransaction(
                safe_tx_hash=safe_tx_hash,
                safe_address=self.account.safe,
                chain_id=result.chain_id,
                status=TransactionStatus.PENDING,
                nonce=records.transactions[0].nonce,
                transaction_ids=[tx.id for tx in records.transactions],
                proposed_by=self.account.signer,
            )
        )
        logger.info("Proposed Safe transaction %s on %s", safe_tx_hash, self.account.safe)
        return records


class GovernorSender(Sender):
    """OpenZeppelin Governor; transactions wait for the proposal to pass."""

    type = "oz_governor"

    def __init__(self, account: AccountConfig):
        if not account.governor:
            raise ConfigError(f"governor account '{account.name}' requires 'governor' address")
        if not account.proposer:
            raise ConfigError(f"governor account '{account.name}' requires 'proposer'")
        super().__init__(account)

    @property
    def timelock(self) -> Optional[str]:
        return self.account.timelock or None

    def settle(self, result: ScriptResult, context: SettlementContext) -> StepRecords:
        records = super().settle(result, context)
        proposal_id = result.returns.get("proposalId")
        if proposal_id:
            logger.info("Governor %s proposal %s created", self.account.governor, proposal_id)
        return records


def sender_for_namespace(
    project: ProjectConfig, namespace: str, role: str = "deployer"
) -> Sender:
    """
    The sender a namespace uses for a role.

    Projects without any [accounts] fall back to a key-based sender, leaving
    key selection to forge.

    Raises:
        ConfigError: If accounts are configured but the role has none
    """
    if not project.accounts:
        return PrivateKeySender(AccountConfig(name="default", type="private_key"))

    account = project.resolve_namespace(namespace).get(role)
    if account is None:
        raise ConfigError(f"namespace '{namespace}' has no account for role '{role}'")
    return Sender.from_config(account.name, account)
