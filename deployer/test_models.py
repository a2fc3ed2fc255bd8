#!/usr/bin/env python3
"""
Tests for deployment parameters and the run state ledger
"""

import pytest

from deployer.conftest import ADDRESS_A, ADDRESS_B
from deployer.errors import DeploymentError, InvalidParameters, InvariantViolation
from deployer.models import (
    STEP_ORDER,
    DeploymentBundle,
    DeploymentParameters,
    OrchestrationState,
    RoleAssignment,
    RunStatus,
    StepId,
    StepResult,
    StepStatus,
)

MIXED_CASE = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


def make_params(**overrides):
    values = dict(
        token_name="USD Coin",
        token_symbol="USDC",
        currency="USD",
        decimal_places=6,
        owner_address=ADDRESS_A,
        pauser_address=ADDRESS_A,
        blacklister_address=ADDRESS_A,
        master_minter_owner_address=ADDRESS_A,
        proxy_admin_address=ADDRESS_B,
    )
    values.update(overrides)
    return DeploymentParameters(**values)


class TestDeploymentParameters:
    """Test class for parameter validation"""

    def test_addresses_are_checksummed(self):
        params = make_params(owner_address=MIXED_CASE.lower())
        assert params.owner_address == MIXED_CASE

    def test_from_roles(self):
        roles = RoleAssignment.uniform(ADDRESS_A, proxy_admin=ADDRESS_B)
        params = DeploymentParameters.from_roles("USD Coin", "USDC", "USD", 6, roles)
        assert params == make_params()
        assert params.roles == roles

    def test_zero_decimals_allowed(self):
        assert make_params(decimal_places=0).decimal_places == 0

    @pytest.mark.parametrize("decimals", [-1, 256, 6.0, "6", True])
    def test_invalid_decimals(self, decimals):
        with pytest.raises(InvalidParameters):
            make_params(decimal_places=decimals)

    def test_invalid_address(self):
        with pytest.raises(InvalidParameters) as exc_info:
            make_params(pauser_address="0x1234")
        assert "pauser_address" in str(exc_info.value)

    def test_bad_checksum_rejected(self):
        bad = MIXED_CASE[:-1] + MIXED_CASE[-1].swapcase()
        with pytest.raises(InvalidParameters):
            make_params(owner_address=bad)

    def test_uppercase_address_accepted(self):
        params = make_params(pauser_address="0x" + MIXED_CASE[2:].upper())
        assert params.pauser_address == MIXED_CASE

    def test_bad_checksum_message(self):
        bad = MIXED_CASE.replace("aAeb", "AAeb")
        with pytest.raises(InvalidParameters) as exc_info:
            make_params(blacklister_address=bad)
        assert "checksum" in str(exc_info.value)

    def test_zero_address(self):
        with pytest.raises(InvalidParameters):
            make_params(proxy_admin_address="0x" + "0" * 40)

    def test_empty_name(self):
        with pytest.raises(InvalidParameters):
            make_params(token_name="  ")

    def test_invalid_parameters_is_invariant_violation(self):
        assert issubclass(InvalidParameters, InvariantViolation)


class TestOrchestrationState:
    """Test class for the append-only step ledger"""

    def setup_method(self):
        self.state = OrchestrationState(parameters=make_params())

    def _confirm(self, step, address=None):
        self.state.record(StepResult(step, StepStatus.CONFIRMED, address, "0x01"))

    def test_confirmed_result_advances(self):
        self._confirm(StepId.DEPLOY_LIBRARY, ADDRESS_A)
        assert self.state.current_step is StepId.LINK_IMPLEMENTATION
        assert self.state.produced_address(StepId.DEPLOY_LIBRARY) == ADDRESS_A

    def test_out_of_order_result_rejected(self):
        with pytest.raises(DeploymentError):
            self._confirm(StepId.DEPLOY_PROXY)
        assert self.state.results == []

    def test_pending_result_rejected(self):
        with pytest.raises(DeploymentError):
            self.state.record(StepResult(StepId.DEPLOY_LIBRARY, StepStatus.PENDING))

    def test_failed_result_does_not_advance(self):
        self.state.record(StepResult(StepId.DEPLOY_LIBRARY, StepStatus.FAILED, error_detail="boom"))
        assert self.state.current_step is StepId.DEPLOY_LIBRARY

    def test_no_records_after_abort(self):
        self.state.abort(StepId.DEPLOY_LIBRARY, DeploymentError("boom"))
        with pytest.raises(DeploymentError):
            self._confirm(StepId.DEPLOY_LIBRARY)

    def test_complete_requires_every_step(self):
        bundle = DeploymentBundle(ADDRESS_A, ADDRESS_A, ADDRESS_A)
        with pytest.raises(DeploymentError):
            self.state.complete(bundle)
        for step in STEP_ORDER:
            self._confirm(step)
        self.state.complete(bundle)
        assert self.state.status is RunStatus.ALL_CONFIRMED
        assert self.state.current_step is None

    def test_results_are_frozen(self):
        self._confirm(StepId.DEPLOY_LIBRARY, ADDRESS_A)
        with pytest.raises(Exception):
            self.state.results[0].status = StepStatus.FAILED

    def test_persisted_state_restores(self):
        self._confirm(StepId.DEPLOY_LIBRARY, ADDRESS_A)
        self._confirm(StepId.LINK_IMPLEMENTATION)
        self.state.record(StepResult(StepId.DEPLOY_IMPLEMENTATION, StepStatus.FAILED,
                                     transaction_handle="0x02", error_detail="Transaction reverted: x"))
        self.state.abort(StepId.DEPLOY_IMPLEMENTATION, DeploymentError("Transaction reverted: x"))

        restored = OrchestrationState.from_dict(self.state.to_dict())
        assert restored.parameters == self.state.parameters
        assert restored.results == self.state.results
        assert restored.status is RunStatus.ABORTED
        assert restored.aborted_at is StepId.DEPLOY_IMPLEMENTATION
        assert str(restored.error) == "Transaction reverted: x"
        assert restored.current_step is StepId.DEPLOY_IMPLEMENTATION
