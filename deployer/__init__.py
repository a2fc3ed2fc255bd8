"""
Fiat Token Deployer
===================

Deploys an upgradeable fiat token (FiatTokenV2_2 behind FiatTokenProxy, with
MasterMinter) as an ordered sequence of confirmed transactions.

Structure:
- artifacts: contract artifact resolution
- linker: library placeholder linking
- gateway: transaction building, signing and submission
- waiter: receipt polling and confirmation
- sequencer: the deployment state machine
- events: progress events and reporters
- deploy: environment-driven entry point
"""

from .artifacts import ArtifactDescriptor, ArtifactResolver
from .errors import DeploymentAborted, DeploymentError, InvariantViolation
from .models import (
    DeploymentBundle,
    DeploymentParameters,
    OrchestrationState,
    RoleAssignment,
    StepId,
    StepResult,
    StepStatus,
)
from .sequencer import BatchedTopology, CancellationToken, Sequencer, StepwiseTopology

__version__ = "1.0.0"

__all__ = [
    'ArtifactDescriptor',
    'ArtifactResolver',
    'BatchedTopology',
    'CancellationToken',
    'DeploymentAborted',
    'DeploymentBundle',
    'DeploymentError',
    'DeploymentParameters',
    'InvariantViolation',
    'OrchestrationState',
    'RoleAssignment',
    'Sequencer',
    'StepId',
    'StepResult',
    'StepStatus',
    'StepwiseTopology',
]
