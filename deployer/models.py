"""
Deployment data model
Parameters, step ledger and the terminal address bundle
"""

from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from eth_utils import is_checksum_address, is_hex_address
from web3 import Web3

from .errors import DeploymentError, InvalidParameters

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class StepId(str, Enum):
    DEPLOY_LIBRARY = "DeployLibrary"
    LINK_IMPLEMENTATION = "LinkImplementation"
    DEPLOY_IMPLEMENTATION = "DeployImplementation"
    DEPLOY_PROXY = "DeployProxy"
    DEPLOY_MASTER_MINTER = "DeployMasterMinter"
    TRANSFER_MASTER_MINTER_OWNERSHIP = "TransferMasterMinterOwnership"
    CHANGE_PROXY_ADMIN = "ChangeProxyAdmin"
    INITIALIZE_V1 = "InitializeV1"
    INITIALIZE_V2 = "InitializeV2"
    INITIALIZE_V2_1 = "InitializeV2_1"
    INITIALIZE_V2_2 = "InitializeV2_2"


STEP_ORDER = tuple(StepId)


class StepStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"


class RunStatus(str, Enum):
    RUNNING = "Running"
    ALL_CONFIRMED = "AllConfirmed"
    ABORTED = "Aborted"


def normalize_address(value: str, field_name: str = "address") -> str:
    """
    Validate an address and return its checksum form.

    All-lowercase and all-uppercase hex are accepted as is; mixed case must
    carry a valid EIP-55 checksum.
    """
    if not isinstance(value, str) or not is_hex_address(value):
        raise InvalidParameters(f"{field_name} is not a valid address: {value!r}")
    body = value[2:] if value[:2] in ("0x", "0X") else value
    if body != body.lower() and body != body.upper() and not is_checksum_address(value):
        raise InvalidParameters(f"{field_name} has an invalid checksum: {value!r}")
    checksum = Web3.to_checksum_address(value)
    if checksum == ZERO_ADDRESS:
        raise InvalidParameters(f"{field_name} must not be the zero address")
    return checksum


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    return a.lower() == b.lower()


@dataclass(frozen=True)
class RoleAssignment:
    """Who holds each administrative role of the deployed token"""
    owner: str
    pauser: str
    blacklister: str
    master_minter_owner: str
    proxy_admin: str

    @classmethod
    def uniform(cls, address: str, proxy_admin: str) -> "RoleAssignment":
        """One address holds every role except proxy admin"""
        return cls(
            owner=address,
            pauser=address,
            blacklister=address,
            master_minter_owner=address,
            proxy_admin=proxy_admin,
        )


@dataclass(frozen=True)
class DeploymentParameters:
    token_name: str
    token_symbol: str
    currency: str
    decimal_places: int
    owner_address: str
    pauser_address: str
    blacklister_address: str
    master_minter_owner_address: str
    proxy_admin_address: str

    def __post_init__(self):
        for name in ("token_name", "token_symbol", "currency"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise InvalidParameters(f"{name} must be a non-empty string")
        decimals = self.decimal_places
        if isinstance(decimals, bool) or not isinstance(decimals, int) or decimals < 0:
            raise InvalidParameters(
                f"decimal_places must be a non-negative integer, got {decimals!r}"
            )
        # uint8 on the token contract
        if decimals > 255:
            raise InvalidParameters(f"decimal_places out of range: {decimals}")
        for f in fields(self):
            if f.name.endswith("_address"):
                object.__setattr__(
                    self, f.name, normalize_address(getattr(self, f.name), f.name)
                )

    @classmethod
    def from_roles(cls, token_name: str, token_symbol: str, currency: str,
                   decimal_places: int, roles: RoleAssignment) -> "DeploymentParameters":
        return cls(
            token_name=token_name,
            token_symbol=token_symbol,
            currency=currency,
            decimal_places=decimal_places,
            owner_address=roles.owner,
            pauser_address=roles.pauser,
            blacklister_address=roles.blacklister,
            master_minter_owner_address=roles.master_minter_owner,
            proxy_admin_address=roles.proxy_admin,
        )

    @property
    def roles(self) -> RoleAssignment:
        return RoleAssignment(
            owner=self.owner_address,
            pauser=self.pauser_address,
            blacklister=self.blacklister_address,
            master_minter_owner=self.master_minter_owner_address,
            proxy_admin=self.proxy_admin_address,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StepResult:
    step_id: StepId
    status: StepStatus
    produced_address: Optional[str] = None
    transaction_handle: Optional[str] = None
    error_detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'step_id': self.step_id.value,
            'status': self.status.value,
            'produced_address': self.produced_address,
            'transaction_handle': self.transaction_handle,
            'error_detail': self.error_detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        return cls(
            step_id=StepId(data['step_id']),
            status=StepStatus(data['status']),
            produced_address=data.get('produced_address'),
            transaction_handle=data.get('transaction_handle'),
            error_detail=data.get('error_detail'),
        )


@dataclass(frozen=True)
class DeploymentBundle:
    implementation_address: str
    proxy_address: str
    master_minter_address: str
    library_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OrchestrationState:
    """
    Progress of a single run. Results form an append-only ledger of terminal
    step outcomes in step order; current_step_index points at the next step.
    """
    parameters: DeploymentParameters
    results: List[StepResult] = field(default_factory=list)
    current_step_index: int = 0
    status: RunStatus = RunStatus.RUNNING
    aborted_at: Optional[StepId] = None
    error: Optional[BaseException] = None
    bundle: Optional[DeploymentBundle] = None

    @property
    def current_step(self) -> Optional[StepId]:
        if self.current_step_index >= len(STEP_ORDER):
            return None
        return STEP_ORDER[self.current_step_index]

    @property
    def is_terminal(self) -> bool:
        return self.status is not RunStatus.RUNNING

    def record(self, result: StepResult):
        """Append a terminal step outcome; Confirmed advances the index"""
        if self.is_terminal:
            raise DeploymentError(f"Run already {self.status.value}")
        if result.status is StepStatus.PENDING:
            raise DeploymentError("Only Confirmed or Failed results are recorded")
        if result.step_id is not self.current_step:
            raise DeploymentError(
                f"Out-of-order result for {result.step_id.value}; "
                f"expected {self.current_step.value if self.current_step else 'none'}"
            )
        self.results.append(result)
        if result.status is StepStatus.CONFIRMED:
            self.current_step_index += 1

    def abort(self, step: Optional[StepId], error: BaseException):
        self.status = RunStatus.ABORTED
        self.aborted_at = step
        self.error = error

    def complete(self, bundle: DeploymentBundle):
        if self.current_step is not None:
            raise DeploymentError(
                f"Cannot complete run before {self.current_step.value} is confirmed"
            )
        self.status = RunStatus.ALL_CONFIRMED
        self.bundle = bundle

    def confirmed(self) -> List[StepResult]:
        return [r for r in self.results if r.status is StepStatus.CONFIRMED]

    def produced_address(self, step: StepId) -> Optional[str]:
        for result in self.results:
            if result.step_id is step and result.status is StepStatus.CONFIRMED:
                return result.produced_address
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'parameters': self.parameters.to_dict(),
            'results': [r.to_dict() for r in self.results],
            'current_step_index': self.current_step_index,
            'status': self.status.value,
            'aborted_at': self.aborted_at.value if self.aborted_at else None,
            'error': str(self.error) if self.error is not None else None,
            'error_type': type(self.error).__name__ if self.error is not None else None,
            'bundle': self.bundle.to_dict() if self.bundle else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestrationState":
        error = DeploymentError(data['error']) if data.get('error') else None
        bundle = DeploymentBundle(**data['bundle']) if data.get('bundle') else None
        return cls(
            parameters=DeploymentParameters(**data['parameters']),
            results=[StepResult.from_dict(r) for r in data.get('results', [])],
            current_step_index=data.get('current_step_index', 0),
            status=RunStatus(data.get('status', RunStatus.RUNNING.value)),
            aborted_at=StepId(data['aborted_at']) if data.get('aborted_at') else None,
            error=error,
            bundle=bundle,
        )
