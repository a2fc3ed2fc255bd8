"""
Deployment error taxonomy
Every step failure halts the run; the class decides whether a retry is ever safe.
"""

from typing import Any, Optional


class DeploymentError(Exception):
    """Base class for every failure raised by the deployer"""

    retryable = False


class ConfigError(DeploymentError):
    """Missing or malformed environment configuration"""


class ArtifactNotFound(DeploymentError):
    """No artifact is known under the requested name"""

    def __init__(self, name: str):
        super().__init__(f"Artifact not found: {name}")
        self.name = name


class InvalidArtifact(DeploymentError):
    """Artifact exists but lacks an ABI or bytecode"""


class LinkError(DeploymentError):
    """Internal linking defect; never retried"""


class UnresolvedPlaceholder(LinkError):
    def __init__(self, token: str):
        super().__init__(f"No address supplied for link placeholder {token}")
        self.token = token


class MalformedTemplate(LinkError):
    def __init__(self, token: str):
        super().__init__(f"Malformed link placeholder: {token!r}")
        self.token = token


class UserDeclined(DeploymentError):
    """The signer refused to authorize the submission"""


RejectedBySigner = UserDeclined


class NetworkError(DeploymentError):
    """Transient transport failure before the ledger accepted the request"""

    retryable = True


class InvalidOperation(DeploymentError):
    """Malformed deployment or invocation request"""


class Reverted(DeploymentError):
    """The operation executed on the ledger and failed logically"""

    def __init__(self, reason: str, transaction_hash: Optional[str] = None):
        super().__init__(f"Transaction reverted: {reason}")
        self.reason = reason
        self.transaction_hash = transaction_hash


class ConfirmationTimeout(DeploymentError):
    """
    No finalized state was observed within the wait window.
    The ledger state is unknown: verify it manually before resuming.
    """

    def __init__(self, transaction_hash: str, timeout: float):
        super().__init__(
            f"Transaction {transaction_hash} not finalized within {timeout}s; "
            f"outcome unknown"
        )
        self.transaction_hash = transaction_hash
        self.timeout = timeout


class InvariantViolation(DeploymentError):
    """Parameters that would break the deployment; rejected before any submission"""


class InvalidParameters(InvariantViolation):
    """A deployment parameter failed validation"""


class RunCancelled(DeploymentError):
    """The run was cancelled at a step boundary"""


class DeploymentAborted(DeploymentError):
    """Raised by Sequencer.run when the run ends in the Aborted state"""

    def __init__(self, state: Any):
        step = state.aborted_at.value if state.aborted_at is not None else "preflight"
        super().__init__(f"Deployment aborted at {step}: {state.error}")
        self.state = state
        self.cause = state.error


class SubmissionOutcomeUnknown(DeploymentError):
    """
    The transport failed while the signed transaction was being sent, so the
    ledger may or may not have accepted it. Never retried.
    """

    def __init__(self, transaction_hash: str, detail: str):
        super().__init__(
            f"Submission of {transaction_hash} interrupted ({detail}); "
            f"verify ledger state before resuming"
        )
        self.transaction_hash = transaction_hash


class DeploymentInterrupted(KeyboardInterrupt):
    """
    A forced interrupt landed in the middle of a step.

    Still a KeyboardInterrupt, so it unwinds like one; ``state`` is the run
    aborted at the interrupted step, for saving before exit.
    """

    def __init__(self, state: Any):
        step = state.aborted_at.value if state.aborted_at is not None else "preflight"
        super().__init__(f"Deployment interrupted during {step}")
        self.state = state
