"""
Shared fixtures: minimal contract artifacts and in-memory ledger fakes
"""

import pytest
from eth_abi import encode
from eth_utils import event_abi_to_log_topic

from deployer.artifacts import ArtifactResolver
from deployer.errors import Reverted
from deployer.gateway import Deploy, Invoke, PendingHandle, SubmissionGateway
from deployer.models import DeploymentParameters, RoleAssignment
from deployer.sequencer import DEFAULT_LIBRARY_PLACEHOLDER
from deployer.waiter import ConfirmationWaiter, Outcome

ADDRESS_A = "0x1111111111111111111111111111111111111111"
ADDRESS_B = "0x2222222222222222222222222222222222222222"
HELPER = "0x3333333333333333333333333333333333333333"
# the connected wallet holds every token role
CALLER = ADDRESS_A


def _fn(name, *types):
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": f"arg{i}", "type": t} for i, t in enumerate(types)],
        "outputs": [],
        "stateMutability": "nonpayable",
    }


def _ctor(*types):
    return {
        "type": "constructor",
        "inputs": [{"name": f"arg{i}", "type": t} for i, t in enumerate(types)],
        "stateMutability": "nonpayable",
    }


TOKEN_ABI = [
    _fn("initialize", "string", "string", "string", "uint8",
        "address", "address", "address", "address"),
    _fn("initializeV2", "string"),
    _fn("initializeV2_1", "address"),
    _fn("initializeV2_2", "address[]", "string"),
]
PROXY_ABI = [_ctor("address"), _fn("changeAdmin", "address"), _fn("upgradeTo", "address")]
MASTER_MINTER_ABI = [_ctor("address"), _fn("transferOwnership", "address")]
TOKEN_DEPLOYED_EVENT = {
    "type": "event",
    "name": "TokenDeployed",
    "anonymous": False,
    "inputs": [
        {"name": "proxy", "type": "address", "indexed": True},
        {"name": "masterMinter", "type": "address", "indexed": False},
    ],
}
HELPER_ABI = [
    _fn("deployAndInitialize", "address", "string", "string", "string", "uint8",
        "address", "address", "address", "address", "address"),
    TOKEN_DEPLOYED_EVENT,
]

LIBRARY_CODE = "0x60016001"
TOKEN_CODE = "0x60026002" + DEFAULT_LIBRARY_PLACEHOLDER + "6002" + DEFAULT_LIBRARY_PLACEHOLDER + "00"
PROXY_CODE = "0x60036003"
MASTER_MINTER_CODE = "0x60046004"

CODE_NAMES = {
    LIBRARY_CODE: "SignatureChecker",
    "0x60026002": "FiatTokenV2_2",
    PROXY_CODE: "FiatTokenProxy",
    MASTER_MINTER_CODE: "MasterMinter",
}

STEPWISE_SUBMISSIONS = [
    "SignatureChecker",
    "FiatTokenV2_2",
    "FiatTokenProxy",
    "MasterMinter",
    "transferOwnership",
    "changeAdmin",
    "initialize",
    "initializeV2",
    "initializeV2_1",
    "initializeV2_2",
]


def raw_artifacts():
    return {
        "SignatureChecker": {"contractName": "SignatureChecker", "abi": [], "bytecode": LIBRARY_CODE},
        "FiatTokenV2_2": {"contractName": "FiatTokenV2_2", "abi": TOKEN_ABI, "bytecode": TOKEN_CODE},
        "FiatTokenProxy": {"contractName": "FiatTokenProxy", "abi": PROXY_ABI, "bytecode": PROXY_CODE},
        "MasterMinter": {"contractName": "MasterMinter", "abi": MASTER_MINTER_ABI,
                         "bytecode": {"object": MASTER_MINTER_CODE[2:]}},
        "FiatTokenDeployHelper": {"contractName": "FiatTokenDeployHelper", "abi": HELPER_ABI,
                                  "bytecode": "0x60056005"},
    }


def label(operation):
    """Short name of an operation: contract name for deployments, method for calls"""
    if isinstance(operation, Invoke):
        return operation.method
    for prefix, name in CODE_NAMES.items():
        if operation.payload.startswith(prefix):
            return name
    return "unknown"


def token_deployed_log(proxy, master_minter):
    return {
        "topics": [
            event_abi_to_log_topic(TOKEN_DEPLOYED_EVENT),
            encode(["address"], [proxy]),
        ],
        "data": encode(["address"], [master_minter]),
    }


class FakeLedger:
    """Hands out transaction hashes and contract addresses; records call order"""

    def __init__(self):
        self.journal = []
        self.count = 0

    def next_hash(self):
        self.count += 1
        return "0x%064x" % self.count

    @staticmethod
    def address_for(tx_hash):
        return "0x%040x" % (0x1000 + int(tx_hash, 16))


class FakeGateway(SubmissionGateway):
    """Records submissions; ``fail`` picks operations to reject with ``error``"""

    def __init__(self, ledger, caller=CALLER, fail=None, error=None):
        self.ledger = ledger
        self.caller = caller
        self.fail = fail
        self.error = error
        self.submitted = []

    @property
    def caller_address(self):
        return self.caller

    def submit(self, operation):
        if self.fail is not None and self.fail(operation):
            self.ledger.journal.append(("rejected", label(operation)))
            raise self.error
        tx_hash = self.ledger.next_hash()
        self.submitted.append(operation)
        self.ledger.journal.append(("submit", label(operation)))
        return PendingHandle(tx_hash, operation, self.ledger.count)


class FakeWaiter(ConfirmationWaiter):
    def __init__(self, ledger, fail=None, error=None):
        self.ledger = ledger
        self.fail = fail
        self.error = error or Reverted("boom")

    def wait(self, handle):
        operation = handle.operation
        if self.fail is not None and self.fail(operation):
            self.ledger.journal.append(("reverted", label(operation)))
            raise self.error
        self.ledger.journal.append(("confirmed", label(operation)))
        if isinstance(operation, Deploy):
            return Outcome(handle.transaction_hash, 1, FakeLedger.address_for(handle.transaction_hash))
        if operation.method == "deployAndInitialize":
            base = int(handle.transaction_hash, 16)
            proxy = "0x%040x" % (0x9000 + base)
            master_minter = "0x%040x" % (0xa000 + base)
            return Outcome(handle.transaction_hash, 1, None, logs=(token_deployed_log(proxy, master_minter),))
        return Outcome(handle.transaction_hash, 1)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def resolver():
    return ArtifactResolver.from_mapping(raw_artifacts())


@pytest.fixture
def params():
    return DeploymentParameters.from_roles(
        token_name="USD Coin",
        token_symbol="USDC",
        currency="USD",
        decimal_places=6,
        roles=RoleAssignment.uniform(ADDRESS_A, proxy_admin=ADDRESS_B),
    )
