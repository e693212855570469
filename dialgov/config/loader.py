"""
dialgov TOML Configuration Loader

Loads every section of config.toml at startup and applies environment
variable overrides.

Environment variable mapping:
    [engine] account_id         → DIALGOV_ACCOUNT_ID
    [engine] inbound_topic_id   → DIALGOV_INBOUND_TOPIC_ID
    [transport] mirror_url      → DIALGOV_MIRROR_URL
    [execution] enabled         → DIALGOV_EXECUTION_ENABLED
    ...

Secrets (the execution API key) MUST come from env vars, never TOML.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from ..constants import (
    CONNECTION_TIMEOUT,
    GOVERNANCE_CHANGE_HISTORY_LIMIT,
    GOVERNANCE_SNAPSHOT_RECENT_CHANGES,
    GOVERNANCE_TOTAL_SUPPLY,
    HEARTBEAT_INTERVAL_SECONDS,
    INGEST_POLL_INTERVAL_SECONDS,
    PROTOCOL_TAG,
    RATIO_FUNCTION_NAME,
    RATIO_GAS_LIMIT,
    RATIO_MAX,
    RATIO_MIN,
    RATIO_TOKEN_ORDER,
    SESSION_SWEEP_INTERVAL_SECONDS,
)
from ..exceptions import ConfigurationError, ValidationError
from ..logger import get_logger
from ..tokens import TokenInfo

logger = get_logger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
TRANSPORT_KINDS = ("mirror", "memory")


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Sections: one per [section] of config.example.toml
# ---------------------------------------------------------------------------


@dataclass
class EngineSectionConfig:
    """[engine] section."""
    account_id: str = ""
    inbound_topic_id: str = ""
    outbound_topic_id: str = ""
    protocol_tag: str = PROTOCOL_TAG
    poll_interval: float = INGEST_POLL_INTERVAL_SECONDS
    sweep_interval: float = SESSION_SWEEP_INTERVAL_SECONDS
    heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineSectionConfig":
        return cls(
            account_id=data.get("account_id", ""),
            inbound_topic_id=data.get("inbound_topic_id", ""),
            outbound_topic_id=data.get("outbound_topic_id", ""),
            protocol_tag=data.get("protocol_tag", PROTOCOL_TAG),
            poll_interval=data.get("poll_interval", INGEST_POLL_INTERVAL_SECONDS),
            sweep_interval=data.get("sweep_interval", SESSION_SWEEP_INTERVAL_SECONDS),
            heartbeat_interval=data.get("heartbeat_interval", HEARTBEAT_INTERVAL_SECONDS),
            log_level=str(data.get("log_level", "INFO")).upper(),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("DIALGOV_ACCOUNT_ID"):
            self.account_id = v
        if v := os.environ.get("DIALGOV_INBOUND_TOPIC_ID"):
            self.inbound_topic_id = v
        if v := os.environ.get("DIALGOV_OUTBOUND_TOPIC_ID"):
            self.outbound_topic_id = v
        if v := os.environ.get("DIALGOV_LOG_LEVEL"):
            self.log_level = v.upper()

    @property
    def operator_id(self) -> str:
        """``<inboundTopic>@<accountId>`` as stamped on outbound envelopes."""
        return f"{self.inbound_topic_id}@{self.account_id}"


@dataclass
class GovernanceSectionConfig:
    """[governance] section."""
    total_supply: Decimal = GOVERNANCE_TOTAL_SUPPLY
    history_limit: int = GOVERNANCE_CHANGE_HISTORY_LIMIT
    recent_changes: int = GOVERNANCE_SNAPSHOT_RECENT_CHANGES
    validate_options: bool = True
    # Overrides governance.votingPeriodHours when set
    voting_period_hours: Optional[float] = None
    contract_address: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GovernanceSectionConfig":
        raw_supply = data.get("total_supply", GOVERNANCE_TOTAL_SUPPLY)
        try:
            total_supply = Decimal(str(raw_supply))
        except InvalidOperation:
            raise ConfigurationError(f"Invalid [governance] total_supply: {raw_supply!r}")
        return cls(
            total_supply=total_supply,
            history_limit=data.get("history_limit", GOVERNANCE_CHANGE_HISTORY_LIMIT),
            recent_changes=data.get("recent_changes", GOVERNANCE_SNAPSHOT_RECENT_CHANGES),
            validate_options=data.get("validate_options", True),
            voting_period_hours=data.get("voting_period_hours"),
            contract_address=data.get("contract_address"),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("DIALGOV_CONTRACT_ADDRESS"):
            self.contract_address = v


@dataclass
class TransportConfig:
    """[transport] section."""
    kind: str = "mirror"
    mirror_url: str = "https://testnet.mirrornode.hedera.com"
    submit_url: str = ""
    content_url: str = "https://kiloscribe.com/api/inscription-cdn"
    timeout: float = CONNECTION_TIMEOUT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransportConfig":
        defaults = cls()
        return cls(
            kind=data.get("kind", defaults.kind),
            mirror_url=data.get("mirror_url", defaults.mirror_url),
            submit_url=data.get("submit_url", ""),
            content_url=data.get("content_url", defaults.content_url),
            timeout=data.get("timeout", CONNECTION_TIMEOUT),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("DIALGOV_MIRROR_URL"):
            self.mirror_url = v
        if v := os.environ.get("DIALGOV_SUBMIT_URL"):
            self.submit_url = v


@dataclass
class ExecutionConfig:
    """[execution] section. ``api_key`` is read from the environment only."""
    enabled: bool = False
    endpoint_url: str = ""
    contract_id: str = ""
    function_name: str = RATIO_FUNCTION_NAME
    gas: int = RATIO_GAS_LIMIT
    ratio_min: int = RATIO_MIN
    ratio_max: int = RATIO_MAX
    token_order: List[str] = field(default_factory=lambda: list(RATIO_TOKEN_ORDER))
    api_key: str = field(default="", repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionConfig":
        if "api_key" in data:
            logger.warning("[execution] api_key in config file is ignored; use DIALGOV_EXECUTION_API_KEY")
        return cls(
            enabled=data.get("enabled", False),
            endpoint_url=data.get("endpoint_url", ""),
            contract_id=data.get("contract_id", ""),
            function_name=data.get("function_name", RATIO_FUNCTION_NAME),
            gas=data.get("gas", RATIO_GAS_LIMIT),
            ratio_min=data.get("ratio_min", RATIO_MIN),
            ratio_max=data.get("ratio_max", RATIO_MAX),
            token_order=[str(t).upper() for t in data.get("token_order", RATIO_TOKEN_ORDER)],
        )

    def apply_env(self) -> None:
        if v := os.environ.get("DIALGOV_EXECUTION_ENABLED"):
            self.enabled = _env_bool(v)
        if v := os.environ.get("DIALGOV_EXECUTION_URL"):
            self.endpoint_url = v
        if v := os.environ.get("DIALGOV_CONTRACT_ID"):
            self.contract_id = v
        if v := os.environ.get("DIALGOV_EXECUTION_API_KEY"):
            self.api_key = v

    def validate(self) -> None:
        """Fail fast when execution is enabled without its credentials."""
        if not self.enabled:
            return
        if not self.endpoint_url:
            raise ConfigurationError("Execution enabled but [execution] endpoint_url not set")
        if not self.contract_id:
            raise ConfigurationError("Execution enabled but [execution] contract_id not set")
        if not self.api_key:
            raise ConfigurationError("Execution enabled but DIALGOV_EXECUTION_API_KEY not set")
        if self.ratio_min > self.ratio_max:
            raise ConfigurationError(f"ratio_min {self.ratio_min} exceeds ratio_max {self.ratio_max}")
        if not self.token_order:
            raise ConfigurationError("[execution] token_order must not be empty")


@dataclass
class RebalancerConfig:
    """[rebalancer] section."""
    agent_id: str = ""
    topic_id: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RebalancerConfig":
        return cls(
            agent_id=data.get("agent_id", ""),
            topic_id=data.get("topic_id", ""),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("DIALGOV_REBALANCER_TOPIC_ID"):
            self.topic_id = v


# -----------------------------------------------------------------------
# Top-level config
# -----------------------------------------------------------------------

@dataclass
class EngineConfig:
    """
    Governance engine configuration.

    Single source of truth at runtime; built from config.toml plus
    environment overrides.
    """
    engine: EngineSectionConfig = field(default_factory=EngineSectionConfig)
    governance: GovernanceSectionConfig = field(default_factory=GovernanceSectionConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    rebalancer: RebalancerConfig = field(default_factory=RebalancerConfig)
    tokens: List[TokenInfo] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Create EngineConfig from a parsed TOML dict."""
        try:
            tokens = [TokenInfo.from_dict(t) for t in data.get("tokens", [])]
        except ValidationError as e:
            raise ConfigurationError(f"Invalid [[tokens]] entry: {e}") from e
        return cls(
            engine=EngineSectionConfig.from_dict(data.get("engine", {})),
            governance=GovernanceSectionConfig.from_dict(data.get("governance", {})),
            transport=TransportConfig.from_dict(data.get("transport", {})),
            execution=ExecutionConfig.from_dict(data.get("execution", {})),
            rebalancer=RebalancerConfig.from_dict(data.get("rebalancer", {})),
            tokens=tokens,
        )

    @classmethod
    def from_file(cls, config_path: str) -> "EngineConfig":
        """
        Load configuration from a TOML file.

        A missing file yields defaults plus environment overrides.
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning(f"Config file not found: {config_path}; using defaults")
            cfg = cls()
            cfg.apply_env()
            return cfg

        try:
            with open(path, "rb") as f:
                raw = tomli.load(f)
        except tomli.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.engine.apply_env()
        self.governance.apply_env()
        self.transport.apply_env()
        self.execution.apply_env()
        self.rebalancer.apply_env()

    def validate(self) -> bool:
        """
        Validate all sections.

        Raises:
            ConfigurationError: on invalid config
        """
        e = self.engine
        for name in ("account_id", "inbound_topic_id", "outbound_topic_id"):
            if not getattr(e, name):
                raise ConfigurationError(f"[engine] {name} must be set")
        if e.poll_interval <= 0 or e.sweep_interval <= 0:
            raise ConfigurationError("[engine] poll_interval and sweep_interval must be positive")
        if e.heartbeat_interval <= 0:
            raise ConfigurationError("[engine] heartbeat_interval must be positive")
        if e.log_level not in LOG_LEVELS:
            raise ConfigurationError(f"Invalid log_level: {e.log_level}")

        g = self.governance
        if g.total_supply <= 0:
            raise ConfigurationError("[governance] total_supply must be positive")
        if g.history_limit < 1:
            raise ConfigurationError("[governance] history_limit must be >= 1")
        if not 0 <= g.recent_changes <= g.history_limit:
            raise ConfigurationError("[governance] recent_changes must be between 0 and history_limit")
        if g.voting_period_hours is not None and g.voting_period_hours <= 0:
            raise ConfigurationError("[governance] voting_period_hours must be positive")

        if self.transport.kind not in TRANSPORT_KINDS:
            raise ConfigurationError(f"Unknown [transport] kind: {self.transport.kind}")
        if self.transport.kind == "mirror" and not self.transport.mirror_url:
            raise ConfigurationError("[transport] mirror_url must be set")

        self.execution.validate()
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for diagnostics (secrets omitted)."""
        return {
            "engine": {
                "account_id": self.engine.account_id,
                "inbound_topic_id": self.engine.inbound_topic_id,
                "outbound_topic_id": self.engine.outbound_topic_id,
                "poll_interval": self.engine.poll_interval,
                "sweep_interval": self.engine.sweep_interval,
                "log_level": self.engine.log_level,
            },
            "governance": {
                "total_supply": str(self.governance.total_supply),
                "history_limit": self.governance.history_limit,
                "validate_options": self.governance.validate_options,
            },
            "transport": {
                "kind": self.transport.kind,
                "mirror_url": self.transport.mirror_url,
            },
            "execution": {
                "enabled": self.execution.enabled,
                "endpoint_url": self.execution.endpoint_url,
                "contract_id": self.execution.contract_id,
            },
            "rebalancer": {
                "topic_id": self.rebalancer.topic_id,
            },
            "tokens": [t.symbol for t in self.tokens],
        }


def load_config(path: Optional[str] = None) -> EngineConfig:
    """
    Load engine configuration.

    Resolution order:
        1. Explicit *path* argument
        2. DIALGOV_CONFIG env var
        3. ./config.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("DIALGOV_CONFIG", "config.toml")

    return EngineConfig.from_file(path)
