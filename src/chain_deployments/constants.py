"""Configuration constants for chain-deployments library."""

# Registry documents, all living directly in the data directory
DEPLOYMENTS_FILE = "deployments.json"
TRANSACTIONS_FILE = "transactions.json"
SAFE_TRANSACTIONS_FILE = "safe-txs.json"

REGISTRY_FILES = (DEPLOYMENTS_FILE, TRANSACTIONS_FILE, SAFE_TRANSACTIONS_FILE)

# Fork bookkeeping lives under <data_dir>/priv so it can be git-ignored as a unit
PRIVATE_DIR = "priv"
FORK_STATE_FILE = "fork-state.json"

DEFAULT_DATA_DIR = ".treb"
DEFAULT_NAMESPACE = "default"
PROJECT_CONFIG_FILE = "treb.toml"
FOUNDRY_CONFIG_FILE = "foundry.toml"

# Snapshot labels for index 0 of a fork's snapshot stack
FORK_ENTER_COMMAND = "fork enter"
FORK_RESTART_COMMAND = "fork restart"

# Timeouts (seconds)
RPC_TIMEOUT = 30
NODE_START_TIMEOUT = 5
FORKED_NODE_START_TIMEOUT = 30
NODE_STOP_TIMEOUT = 5
SCRIPT_TIMEOUT = 600

NODE_BINARY = "anvil"
FORGE_BINARY = "forge"
LOCAL_HOST = "127.0.0.1"
