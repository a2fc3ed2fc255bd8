"""
Environment configuration for the deployer
Values come from the process environment, with a .env file loaded first.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .models import DeploymentParameters, RoleAssignment
from .sequencer import DEFAULT_LIBRARY_PLACEHOLDER

# Proxy admin used when PROXY_ADMIN_ADDRESS is not set
DEFAULT_PROXY_ADMIN = "0x1269FB8D3C8712c3A70f4d3aF5Dc1DDa314d1532"


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e


@dataclass
class DeployerConfig:
    rpc_url: str
    private_key: str
    chain_id: Optional[int]
    artifacts_dir: str
    confirmation_timeout: float
    poll_interval: float
    confirmations: int
    gas_multiplier: float
    submit_attempts: int
    retry_delay: float
    library_placeholder: str
    deploy_helper_address: Optional[str]
    slack_webhook: Optional[str]
    smtp_server: str
    smtp_port: int
    smtp_username: Optional[str]
    smtp_password: Optional[str]
    notification_email: Optional[str]
    log_file: str
    deployment_output: str
    resume_from: Optional[str]

    # token form
    token_name: str
    token_symbol: str
    currency: str
    decimals: int
    owner_address: Optional[str]
    pauser_address: Optional[str]
    blacklister_address: Optional[str]
    master_minter_owner_address: Optional[str]
    proxy_admin_address: str

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> "DeployerConfig":
        """Build the configuration; ``env`` defaults to os.environ"""
        if env is None:
            if dotenv:
                load_dotenv()
            env = os.environ

        private_key = env.get("PRIVATE_KEY")
        if not private_key:
            raise ConfigError("PRIVATE_KEY not found in environment")

        return cls(
            rpc_url=env.get("RPC_URL", "http://localhost:8545"),
            private_key=private_key,
            chain_id=_get_int(env, "CHAIN_ID", 0) or None,
            artifacts_dir=env.get("ARTIFACTS_DIR", os.path.join(os.getcwd(), "artifacts")),
            confirmation_timeout=_get_float(env, "CONFIRMATION_TIMEOUT", 300),
            poll_interval=_get_float(env, "POLL_INTERVAL", 2.0),
            confirmations=_get_int(env, "CONFIRMATIONS", 1),
            gas_multiplier=_get_float(env, "GAS_MULTIPLIER", 1.2),
            submit_attempts=_get_int(env, "SUBMIT_ATTEMPTS", 3),
            retry_delay=_get_float(env, "RETRY_DELAY", 5.0),
            library_placeholder=env.get("LIBRARY_PLACEHOLDER", DEFAULT_LIBRARY_PLACEHOLDER),
            deploy_helper_address=env.get("DEPLOY_HELPER_ADDRESS") or None,
            slack_webhook=env.get("SLACK_WEBHOOK") or None,
            smtp_server=env.get("SMTP_SERVER", "smtp.gmail.com"),
            smtp_port=_get_int(env, "SMTP_PORT", 587),
            smtp_username=env.get("SMTP_USERNAME") or None,
            smtp_password=env.get("SMTP_PASSWORD") or None,
            notification_email=env.get("NOTIFICATION_EMAIL") or None,
            log_file=env.get("LOG_FILE", "token_deployer.log"),
            deployment_output=env.get("DEPLOYMENT_OUTPUT", "deployment.json"),
            resume_from=env.get("RESUME_FROM") or None,
            token_name=env.get("TOKEN_NAME", "USDC"),
            token_symbol=env.get("TOKEN_SYMBOL", "USDC"),
            currency=env.get("TOKEN_CURRENCY", "USD"),
            decimals=_get_int(env, "TOKEN_DECIMALS", 6),
            owner_address=env.get("OWNER_ADDRESS") or None,
            pauser_address=env.get("PAUSER_ADDRESS") or None,
            blacklister_address=env.get("BLACKLISTER_ADDRESS") or None,
            master_minter_owner_address=env.get("MASTER_MINTER_OWNER_ADDRESS") or None,
            proxy_admin_address=env.get("PROXY_ADMIN_ADDRESS") or DEFAULT_PROXY_ADMIN,
        )

    def roles(self, caller: str) -> RoleAssignment:
        """Roles left unset fall back to the deploying account"""
        return RoleAssignment(
            owner=self.owner_address or caller,
            pauser=self.pauser_address or caller,
            blacklister=self.blacklister_address or caller,
            master_minter_owner=self.master_minter_owner_address or caller,
            proxy_admin=self.proxy_admin_address,
        )

    def deployment_parameters(self, caller: str) -> DeploymentParameters:
        return DeploymentParameters.from_roles(
            token_name=self.token_name,
            token_symbol=self.token_symbol,
            currency=self.currency,
            decimal_places=self.decimals,
            roles=self.roles(caller),
        )
