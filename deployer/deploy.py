#!/usr/bin/env python3
"""
Upgradeable fiat token deployer
Deploys SignatureChecker, FiatTokenV2_2, FiatTokenProxy and MasterMinter and
initializes the token, writing the run record to DEPLOYMENT_OUTPUT.

Configuration is read from the environment / .env (see deployer.config).
Set RESUME_FROM to a previous run record to continue an aborted deployment
once its on-chain state has been checked.
"""

import json
import signal
import logging
from typing import Optional

from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from .artifacts import ArtifactResolver
from .config import DeployerConfig
from .errors import ConfigError, DeploymentInterrupted
from .events import BufferedReporter, EmailReporter, FanOutReporter, LoggingReporter, SlackReporter
from .gateway import LocalSigner, Web3Gateway
from .models import OrchestrationState, RunStatus
from .sequencer import BatchedTopology, CancellationToken, Sequencer, StepwiseTopology
from .waiter import Web3Waiter

logger = logging.getLogger(__name__)


def configure_logging(log_file: str):
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )


def connect(rpc_url: str) -> Web3:
    """Connect to the RPC endpoint"""
    w3 = Web3(Web3.HTTPProvider(rpc_url))
    w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    if not w3.is_connected():
        raise ConfigError(f"Could not connect to RPC URL: {rpc_url}")
    logger.info(f"Connected to blockchain at {rpc_url}")
    return w3


def load_state(path: str) -> OrchestrationState:
    with open(path, 'r') as f:
        return OrchestrationState.from_dict(json.load(f))


def save_state(state: OrchestrationState, path: str):
    with open(path, 'w') as f:
        json.dump(state.to_dict(), f, indent=2)
    logger.info(f"Run record written to {path}")


def log_orphans(state: OrchestrationState):
    for result in state.confirmed():
        if result.produced_address:
            logger.warning(f"Left on chain by aborted run: {result.step_id.value} at {result.produced_address}")


def build_sequencer(config: DeployerConfig, w3: Web3) -> Sequencer:
    signer = LocalSigner(config.private_key)
    gateway = Web3Gateway(w3, signer, chain_id=config.chain_id,
                          gas_multiplier=config.gas_multiplier)
    waiter = Web3Waiter(w3, timeout=config.confirmation_timeout,
                        poll_interval=config.poll_interval,
                        confirmations=config.confirmations)

    reporters = [LoggingReporter()]
    if config.slack_webhook:
        reporters.append(BufferedReporter(SlackReporter(config.slack_webhook, network=config.rpc_url)))
    if config.smtp_username and config.notification_email:
        reporters.append(BufferedReporter(EmailReporter(
            config.smtp_server, config.smtp_port, config.smtp_username,
            config.smtp_password, config.notification_email, network=config.rpc_url,
        )))

    if config.deploy_helper_address:
        topology = BatchedTopology(config.deploy_helper_address)
    else:
        topology = StepwiseTopology()

    return Sequencer(
        resolver=ArtifactResolver(config.artifacts_dir),
        gateway=gateway,
        waiter=waiter,
        reporter=FanOutReporter(reporters),
        topology=topology,
        library_placeholder=config.library_placeholder,
        submit_attempts=config.submit_attempts,
        retry_delay=config.retry_delay,
    )


def install_interrupt_handler(cancel: CancellationToken):
    """First Ctrl-C stops after the current step; the second one interrupts"""
    def handler(signum, frame):
        if cancel.cancelled:
            raise KeyboardInterrupt
        logger.warning("Interrupt received: stopping after the current step (Ctrl-C again to force)")
        cancel.cancel()
    signal.signal(signal.SIGINT, handler)


def main(config: Optional[DeployerConfig] = None) -> OrchestrationState:
    config = config or DeployerConfig.from_env()
    configure_logging(config.log_file)

    w3 = connect(config.rpc_url)
    sequencer = build_sequencer(config, w3)
    params = config.deployment_parameters(sequencer.gateway.caller_address)

    resume = load_state(config.resume_from) if config.resume_from else None
    cancel = CancellationToken()
    install_interrupt_handler(cancel)

    try:
        state = sequencer.execute(params, cancel=cancel, resume=resume)
    except DeploymentInterrupted as e:
        save_state(e.state, config.deployment_output)
        log_orphans(e.state)
        raise
    finally:
        sequencer.reporter.close()

    save_state(state, config.deployment_output)
    if state.status is not RunStatus.ALL_CONFIRMED:
        log_orphans(state)
        raise SystemExit(1)
    return state


if __name__ == "__main__":
    main()
