"""
Deployment sequencer
Drives the fixed eleven-step deployment of the upgradeable fiat token:

    1. DeployLibrary                   7. ChangeProxyAdmin
    2. LinkImplementation (local)      8. InitializeV1
    3. DeployImplementation            9. InitializeV2
    4. DeployProxy                    10. InitializeV2_1
    5. DeployMasterMinter             11. InitializeV2_2
    6. TransferMasterMinterOwnership

Each step waits for its transaction to be confirmed before the next one is
submitted. The first failure aborts the run. Nothing is rolled back: contracts
already deployed by an aborted run stay on chain and are listed in the run
state, which can be handed back to ``execute`` to resume.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .artifacts import ArtifactDescriptor, ArtifactResolver
from .errors import (
    DeploymentAborted,
    DeploymentError,
    DeploymentInterrupted,
    InvalidOperation,
    InvariantViolation,
    NetworkError,
    Reverted,
    RunCancelled,
)
from .events import (
    ProgressEvent,
    ProgressReporter,
    RunAborted,
    RunComplete,
    StepConfirmed,
    StepFailed,
    StepStarted,
    StepSubmitted,
)
from .gateway import Deploy, Invoke, Operation, PendingHandle, SubmissionGateway, decode_event
from .linker import dependency_map, link
from .models import (
    STEP_ORDER,
    DeploymentBundle,
    DeploymentParameters,
    OrchestrationState,
    RunStatus,
    StepId,
    StepResult,
    StepStatus,
    normalize_address,
    same_address,
)
from .waiter import ConfirmationWaiter, Outcome

logger = logging.getLogger(__name__)

# SignatureChecker placeholder in the Hardhat build of FiatTokenV2_2
DEFAULT_LIBRARY_PLACEHOLDER = "__$715109b5d747ea58b675c6ea3f0dba8c60$__"

BATCHED_STEPS = STEP_ORDER[STEP_ORDER.index(StepId.DEPLOY_PROXY):]


@dataclass(frozen=True)
class ContractNames:
    """Artifact names of the contracts the deployment uses"""
    library: str = "SignatureChecker"
    implementation: str = "FiatTokenV2_2"
    proxy: str = "FiatTokenProxy"
    master_minter: str = "MasterMinter"
    helper: str = "FiatTokenDeployHelper"


@dataclass(frozen=True)
class StepwiseTopology:
    """Every step is its own transaction"""


@dataclass(frozen=True)
class BatchedTopology:
    """
    Steps 4-11 run inside one call to a pre-deployed helper contract.

    The helper deploys the proxy and master minter, transfers minter
    ownership, changes the proxy admin and runs the four initializers, in
    that order, then emits ``event_name`` carrying the proxy and master
    minter addresses.
    """
    helper_address: str
    method: str = "deployAndInitialize"
    event_name: str = "TokenDeployed"
    decode: Optional[Callable[[Outcome, Sequence[Dict[str, Any]]], Tuple[str, str]]] = field(
        default=None, compare=False
    )


Topology = Union[StepwiseTopology, BatchedTopology]


class CancellationToken:
    """Cooperative cancel flag, checked by the sequencer between steps"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def initialize_v1_args(params: DeploymentParameters, master_minter_address: str) -> Tuple[Any, ...]:
    """Arguments of FiatTokenV1.initialize, in contract order"""
    return (
        params.token_name,
        params.token_symbol,
        params.currency,
        params.decimal_places,
        master_minter_address,
        params.pauser_address,
        params.blacklister_address,
        params.owner_address,
    )


def batch_args(params: DeploymentParameters, implementation_address: str) -> Tuple[Any, ...]:
    """Arguments of the helper's deployAndInitialize"""
    return (
        implementation_address,
        params.token_name,
        params.token_symbol,
        params.currency,
        params.decimal_places,
        params.pauser_address,
        params.blacklister_address,
        params.owner_address,
        params.master_minter_owner_address,
        params.proxy_admin_address,
    )


@dataclass
class _StepOutput:
    step_id: StepId
    produced_address: Optional[str] = None
    transaction_hash: Optional[str] = None


@dataclass
class _Run:
    """Per-run working data; never shared between runs"""
    state: OrchestrationState
    artifacts: Dict[str, ArtifactDescriptor]
    cancel: CancellationToken
    linked_implementation: Optional[str] = None


class Sequencer:
    """
    Runs deployments against a gateway/waiter pair.

    A sequencer keeps no per-run state, so one instance may drive several
    runs; runs sharing a gateway also share its signing account and nonces.
    """

    def __init__(self, resolver: ArtifactResolver, gateway: SubmissionGateway,
                 waiter: ConfirmationWaiter, reporter: Optional[ProgressReporter] = None,
                 topology: Optional[Topology] = None,
                 contracts: ContractNames = ContractNames(),
                 library_placeholder: str = DEFAULT_LIBRARY_PLACEHOLDER,
                 submit_attempts: int = 3, retry_delay: float = 5.0,
                 sleep: Callable[[float], None] = time.sleep):
        if submit_attempts < 1:
            raise ValueError("submit_attempts must be at least 1")
        self.resolver = resolver
        self.gateway = gateway
        self.waiter = waiter
        self.reporter = reporter
        self.topology = topology or StepwiseTopology()
        self.contracts = contracts
        self.library_placeholder = library_placeholder
        self.submit_attempts = submit_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep

    # --- public API ---

    def run(self, params: DeploymentParameters, cancel: Optional[CancellationToken] = None,
            resume: Optional[OrchestrationState] = None) -> DeploymentBundle:
        """Deploy and return the address bundle; raises DeploymentAborted on failure"""
        state = self.execute(params, cancel=cancel, resume=resume)
        if state.status is not RunStatus.ALL_CONFIRMED or state.bundle is None:
            raise DeploymentAborted(state)
        return state.bundle

    def execute(self, params: DeploymentParameters, cancel: Optional[CancellationToken] = None,
                resume: Optional[OrchestrationState] = None) -> OrchestrationState:
        """
        Deploy and return the terminal run state (AllConfirmed or Aborted).

        A KeyboardInterrupt inside a step aborts the run at that step and is
        re-raised as DeploymentInterrupted carrying the state.
        """
        try:
            run = self._preflight(params, resume, cancel or CancellationToken())
        except DeploymentError as e:
            logger.error(f"Pre-flight check failed: {e}")
            state = OrchestrationState(parameters=params)
            state.abort(None, e)
            self._emit(RunAborted(None, e))
            return state

        state = run.state
        logger.info(
            f"Deploying {params.token_symbol} from {self.gateway.caller_address} "
            f"({type(self.topology).__name__}, starting at {state.current_step.value})"
        )

        while state.current_step is not None:
            step = state.current_step
            if run.cancel.cancelled:
                error = RunCancelled(f"Run cancelled before {step.value}")
                logger.warning(str(error))
                state.abort(step, error)
                self._emit(RunAborted(step, error))
                return state

            self._emit(StepStarted(step))
            try:
                outputs = self._execute_step(run, step)
            except KeyboardInterrupt as e:
                # the submitted transaction, if any, may still confirm
                error = RunCancelled(f"Interrupted during {step.value}")
                logger.error(f"{error}; check the ledger before resuming")
                self._fail(state, step, error)
                raise DeploymentInterrupted(state) from e
            except Exception as e:
                if not isinstance(e, DeploymentError):
                    logger.exception(f"Unexpected failure in {step.value}")
                else:
                    logger.error(f"Step {step.value} failed: {e}")
                self._fail(state, step, e)
                return state

            for index, output in enumerate(outputs):
                if index > 0:
                    self._emit(StepStarted(output.step_id))
                state.record(StepResult(
                    step_id=output.step_id,
                    status=StepStatus.CONFIRMED,
                    produced_address=output.produced_address,
                    transaction_handle=output.transaction_hash,
                ))
                self._emit(StepConfirmed(output.step_id, output.produced_address))

        bundle = DeploymentBundle(
            implementation_address=state.produced_address(StepId.DEPLOY_IMPLEMENTATION),
            proxy_address=state.produced_address(StepId.DEPLOY_PROXY),
            master_minter_address=state.produced_address(StepId.DEPLOY_MASTER_MINTER),
            library_address=state.produced_address(StepId.DEPLOY_LIBRARY),
        )
        state.complete(bundle)
        logger.info(f"Deployment complete, token proxy at {bundle.proxy_address}")
        self._emit(RunComplete(bundle))
        return state

    def _fail(self, state: OrchestrationState, step: StepId, error: BaseException):
        state.record(StepResult(
            step_id=step,
            status=StepStatus.FAILED,
            transaction_handle=getattr(error, 'transaction_hash', None),
            error_detail=str(error),
        ))
        state.abort(step, error)
        self._emit(StepFailed(step, error))
        self._emit(RunAborted(step, error))

    # --- pre-flight ---

    def _required_artifacts(self) -> List[str]:
        names = [self.contracts.library, self.contracts.implementation]
        if isinstance(self.topology, BatchedTopology):
            names.append(self.contracts.helper)
        else:
            names.extend([self.contracts.proxy, self.contracts.master_minter])
        return names

    def _preflight(self, params: DeploymentParameters, resume: Optional[OrchestrationState],
                   cancel: CancellationToken) -> _Run:
        caller = self.gateway.caller_address
        # The proxy only forwards calls from non-admin senders
        if same_address(params.proxy_admin_address, caller):
            raise InvariantViolation(
                f"Proxy admin {params.proxy_admin_address} is the deploying account; "
                f"initialization through the proxy would be refused"
            )
        if isinstance(self.topology, BatchedTopology):
            helper = normalize_address(self.topology.helper_address, "helper_address")
            if same_address(params.proxy_admin_address, helper):
                raise InvariantViolation(
                    f"Proxy admin {params.proxy_admin_address} is the deploy helper; "
                    f"initialization through the proxy would be refused"
                )

        artifacts = {name: self.resolver.resolve(name) for name in self._required_artifacts()}

        state = OrchestrationState(parameters=params)
        if resume is not None:
            if resume.parameters != params:
                raise InvariantViolation("Cannot resume a run with different deployment parameters")
            if resume.status is RunStatus.ALL_CONFIRMED:
                raise InvariantViolation("Run already completed; nothing to resume")
            for result in resume.results:
                if result.status is StepStatus.CONFIRMED:
                    state.record(result)
            if (isinstance(self.topology, BatchedTopology)
                    and state.current_step in BATCHED_STEPS
                    and state.current_step is not StepId.DEPLOY_PROXY):
                raise InvariantViolation(
                    f"Batched topology cannot resume from {state.current_step.value}"
                )
            logger.info(f"Resuming with {len(state.results)} confirmed step(s)")
        return _Run(state=state, artifacts=artifacts, cancel=cancel)

    # --- step execution ---

    def _execute_step(self, run: _Run, step: StepId) -> List[_StepOutput]:
        if isinstance(self.topology, BatchedTopology) and step is StepId.DEPLOY_PROXY:
            return self._execute_batch(run)

        handler = {
            StepId.DEPLOY_LIBRARY: self._deploy_library,
            StepId.LINK_IMPLEMENTATION: self._link_implementation,
            StepId.DEPLOY_IMPLEMENTATION: self._deploy_implementation,
            StepId.DEPLOY_PROXY: self._deploy_proxy,
            StepId.DEPLOY_MASTER_MINTER: self._deploy_master_minter,
            StepId.TRANSFER_MASTER_MINTER_OWNERSHIP: self._transfer_master_minter_ownership,
            StepId.CHANGE_PROXY_ADMIN: self._change_proxy_admin,
            StepId.INITIALIZE_V1: self._initialize_v1,
            StepId.INITIALIZE_V2: self._initialize_v2,
            StepId.INITIALIZE_V2_1: self._initialize_v2_1,
            StepId.INITIALIZE_V2_2: self._initialize_v2_2,
        }[step]
        return [handler(run, step)]

    def _submit(self, step: StepId, operation: Operation) -> PendingHandle:
        """Submit, retrying only transport failures that happened before sending"""
        attempt = 1
        while True:
            try:
                handle = self.gateway.submit(operation)
                break
            except NetworkError as e:
                if attempt >= self.submit_attempts:
                    raise
                logger.warning(
                    f"{step.value}: network error on attempt {attempt}/{self.submit_attempts}, "
                    f"retrying in {self.retry_delay}s: {e}"
                )
                attempt += 1
                self._sleep(self.retry_delay)
        self._emit(StepSubmitted(step, handle.transaction_hash))
        return handle

    def _transact(self, step: StepId, operation: Operation) -> Tuple[PendingHandle, Outcome]:
        handle = self._submit(step, operation)
        return handle, self.waiter.wait(handle)

    def _deploy(self, run: _Run, step: StepId, artifact: str, payload: Optional[str] = None,
                args: Tuple[Any, ...] = ()) -> _StepOutput:
        descriptor = run.artifacts[artifact]
        if payload is None:
            # pass-through artifacts carry no placeholders; templated ones fail here
            payload = link(descriptor.payload_template, {})
        handle, outcome = self._transact(step, Deploy(payload, args, descriptor.interface_spec))
        if not outcome.final_address:
            raise Reverted("receipt carries no contract address", handle.transaction_hash)
        return _StepOutput(step, outcome.final_address, handle.transaction_hash)

    def _invoke(self, run: _Run, step: StepId, artifact: str, target: str, method: str,
                args: Tuple[Any, ...]) -> _StepOutput:
        descriptor = run.artifacts[artifact]
        handle, _ = self._transact(step, Invoke(target, method, args, descriptor.interface_spec))
        return _StepOutput(step, None, handle.transaction_hash)

    def _address(self, run: _Run, step: StepId) -> str:
        address = run.state.produced_address(step)
        if address is None:
            raise InvariantViolation(f"No confirmed address from {step.value}")
        return address

    def _deploy_library(self, run: _Run, step: StepId) -> _StepOutput:
        return self._deploy(run, step, self.contracts.library)

    def _linked_implementation(self, run: _Run) -> str:
        if run.linked_implementation is None:
            library_address = self._address(run, StepId.DEPLOY_LIBRARY)
            descriptor = run.artifacts[self.contracts.implementation]
            mapping = {self.library_placeholder: library_address}
            mapping.update(dependency_map(descriptor.link_references,
                                          {self.contracts.library: library_address}))
            run.linked_implementation = link(descriptor.payload_template, mapping)
        return run.linked_implementation

    def _link_implementation(self, run: _Run, step: StepId) -> _StepOutput:
        self._linked_implementation(run)
        logger.info(f"Linked {self.contracts.implementation} against {self.contracts.library}")
        return _StepOutput(step)

    def _deploy_implementation(self, run: _Run, step: StepId) -> _StepOutput:
        return self._deploy(run, step, self.contracts.implementation,
                            payload=self._linked_implementation(run))

    def _deploy_proxy(self, run: _Run, step: StepId) -> _StepOutput:
        implementation = self._address(run, StepId.DEPLOY_IMPLEMENTATION)
        return self._deploy(run, step, self.contracts.proxy, args=(implementation,))

    def _deploy_master_minter(self, run: _Run, step: StepId) -> _StepOutput:
        proxy = self._address(run, StepId.DEPLOY_PROXY)
        return self._deploy(run, step, self.contracts.master_minter, args=(proxy,))

    def _transfer_master_minter_ownership(self, run: _Run, step: StepId) -> _StepOutput:
        return self._invoke(run, step, self.contracts.master_minter,
                            self._address(run, StepId.DEPLOY_MASTER_MINTER),
                            "transferOwnership",
                            (run.state.parameters.master_minter_owner_address,))

    def _change_proxy_admin(self, run: _Run, step: StepId) -> _StepOutput:
        return self._invoke(run, step, self.contracts.proxy,
                            self._address(run, StepId.DEPLOY_PROXY),
                            "changeAdmin",
                            (run.state.parameters.proxy_admin_address,))

    def _initialize(self, run: _Run, step: StepId, method: str, args: Tuple[Any, ...]) -> _StepOutput:
        # proxy address, implementation interface
        return self._invoke(run, step, self.contracts.implementation,
                            self._address(run, StepId.DEPLOY_PROXY), method, args)

    def _initialize_v1(self, run: _Run, step: StepId) -> _StepOutput:
        master_minter = self._address(run, StepId.DEPLOY_MASTER_MINTER)
        return self._initialize(run, step, "initialize",
                                initialize_v1_args(run.state.parameters, master_minter))

    def _initialize_v2(self, run: _Run, step: StepId) -> _StepOutput:
        return self._initialize(run, step, "initializeV2", (run.state.parameters.token_name,))

    def _initialize_v2_1(self, run: _Run, step: StepId) -> _StepOutput:
        return self._initialize(run, step, "initializeV2_1", (run.state.parameters.owner_address,))

    def _initialize_v2_2(self, run: _Run, step: StepId) -> _StepOutput:
        return self._initialize(run, step, "initializeV2_2", ([], run.state.parameters.token_symbol))

    def _execute_batch(self, run: _Run) -> List[_StepOutput]:
        topology = self.topology
        descriptor = run.artifacts[self.contracts.helper]
        implementation = self._address(run, StepId.DEPLOY_IMPLEMENTATION)
        operation = Invoke(topology.helper_address, topology.method,
                           batch_args(run.state.parameters, implementation),
                           descriptor.interface_spec)
        handle, outcome = self._transact(StepId.DEPLOY_PROXY, operation)

        if topology.decode is not None:
            proxy, master_minter = topology.decode(outcome, descriptor.interface_spec)
        else:
            events = decode_event(descriptor.interface_spec, topology.event_name, outcome.logs)
            if not events:
                raise InvalidOperation(
                    f"Helper transaction {handle.transaction_hash} emitted no {topology.event_name}"
                )
            proxy, master_minter = events[0]['proxy'], events[0]['masterMinter']

        produced = {StepId.DEPLOY_PROXY: proxy, StepId.DEPLOY_MASTER_MINTER: master_minter}
        return [_StepOutput(step, produced.get(step), handle.transaction_hash)
                for step in BATCHED_STEPS]

    # --- reporting ---

    def _emit(self, event: ProgressEvent):
        if self.reporter is None:
            return
        try:
            self.reporter.report(event)
        except Exception as e:
            logger.error(f"Progress reporter failed on {type(event).__name__}: {e}")
