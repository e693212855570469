"""
Governance Parameter Store

Holds every governance dial as a leaf (``ParamOption``) of an explicit
parameter tree (``ParamBranch``). Leaves are addressed by dotted paths such
as ``treasury.weights.HBAR``.

``get`` and ``set`` return a typed ``PathLookup`` instead of ``None`` so
callers can tell a missing path from a branch or from a value of the
wrong type.
"""

import hashlib
import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from ..constants import (
    GOVERNANCE_DEFAULT_MIN_QUORUM,
    GOVERNANCE_QUORUM_PATH,
    GOVERNANCE_SCHEMA_VERSION,
    GOVERNANCE_TOTAL_SUPPLY,
    GOVERNANCE_VOTING_PERIOD_PATH,
    TOKEN_WEIGHT_PREFIX,
)
from ..logger import get_logger

logger = get_logger(__name__)

ParamValue = Union[bool, int, float, str]


def iso_timestamp(ts: float) -> str:
    """Epoch seconds → ISO-8601 UTC string (millisecond precision)."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def json_number(value: Any) -> Any:
    """Render Decimals as JSON numbers (int when integral)."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def value_kind(value: Any) -> Optional[str]:
    """'boolean' / 'number' / 'string', or None for anything else."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float, Decimal)):
        return "number"
    if isinstance(value, str):
        return "string"
    return None


# ══════════════════════════════════════════════════════════════════════
#  TREE NODES
# ══════════════════════════════════════════════════════════════════════

@dataclass
class ParamConstraints:
    """Additional validation constraints for a parameter."""
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)

    def violations(self, value: ParamValue) -> List[str]:
        errors = []
        if value_kind(value) == "number":
            if self.min is not None and value < self.min:
                errors.append(f"Value {value} is below minimum {self.min}")
            if self.max is not None and value > self.max:
                errors.append(f"Value {value} is above maximum {self.max}")
        if value_kind(value) == "string" and self.pattern:
            if not re.search(self.pattern, value):
                errors.append(f"Value '{value}' does not match required pattern {self.pattern}")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.min is not None:
            out["min"] = self.min
        if self.max is not None:
            out["max"] = self.max
        if self.pattern:
            out["pattern"] = self.pattern
        if self.dependencies:
            out["dependencies"] = list(self.dependencies)
        return out


@dataclass
class ParamOption:
    """
    A single governance dial.

    Fields:
        value:        Current value
        options:      Allowed discrete choices (ordered)
        min_quorum:   Quorum percentage required to change this dial;
                      overrides the governance-wide default
        description:  Human readable description
        last_changed: Epoch seconds of the last commit
        constraints:  Optional min / max / pattern / dependencies
        advisory:     Options are suggestions only (value need not be one)
    """
    value: ParamValue
    options: List[ParamValue]
    min_quorum: int
    description: str
    last_changed: float = field(default_factory=time.time)
    constraints: Optional[ParamConstraints] = None
    advisory: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "value": self.value,
            "options": list(self.options),
            "lastChanged": iso_timestamp(self.last_changed),
            "minQuorum": self.min_quorum,
            "description": self.description,
        }
        if self.constraints is not None:
            out["constraints"] = self.constraints.to_dict()
        return out


@dataclass
class ParamBranch:
    """Interior node of the parameter tree."""
    children: Dict[str, Union["ParamBranch", ParamOption]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {key: child.to_dict() for key, child in self.children.items()}


ParamNode = Union[ParamBranch, ParamOption]


class LookupStatus(Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    NOT_A_LEAF = "not_a_leaf"
    TYPE_MISMATCH = "type_mismatch"


@dataclass
class PathLookup:
    """Result of resolving or writing a parameter path."""
    status: LookupStatus
    path: str
    leaf: Optional[ParamOption] = None
    detail: str = ""

    @property
    def found(self) -> bool:
        return self.status == LookupStatus.FOUND

    @property
    def value(self) -> Optional[ParamValue]:
        return self.leaf.value if self.leaf is not None else None


# ══════════════════════════════════════════════════════════════════════
#  STORE
# ══════════════════════════════════════════════════════════════════════

class ParameterStore:
    """
    Owner of the parameter tree.

    The tree is only mutated through ``set`` during a governance commit.
    """

    def __init__(
        self,
        root: Optional[ParamBranch] = None,
        total_supply: Decimal = GOVERNANCE_TOTAL_SUPPLY,
        contract_address: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self._root = root if root is not None else default_parameter_tree(clock())
        self.total_supply = Decimal(total_supply)
        self.contract_address = contract_address
        self.last_updated = clock()

    # ── Resolution ────────────────────────────────────────────────────

    def _walk(self, path: str) -> Tuple[Optional[ParamNode], str]:
        if not path:
            return None, "empty path"
        node: ParamNode = self._root
        for segment in path.split("."):
            if not isinstance(node, ParamBranch):
                return None, f"'{segment}' is below a leaf"
            child = node.children.get(segment)
            if child is None:
                return None, f"no segment '{segment}'"
            node = child
        return node, ""

    def get(self, path: str) -> PathLookup:
        node, detail = self._walk(path)
        if node is None:
            return PathLookup(LookupStatus.NOT_FOUND, path, detail=detail)
        if isinstance(node, ParamBranch):
            return PathLookup(LookupStatus.NOT_A_LEAF, path, detail="path is a branch")
        return PathLookup(LookupStatus.FOUND, path, leaf=node)

    def get_value(self, path: str) -> Optional[ParamValue]:
        return self.get(path).value

    def set(self, path: str, value: ParamValue, timestamp: Optional[float] = None) -> PathLookup:
        """
        Write *value* to the leaf at *path* and stamp ``last_changed``.

        Returns a non-FOUND lookup (and leaves the tree untouched) when the
        path is missing, is a branch, or the value kind differs from the
        leaf's current value kind.
        """
        lookup = self.get(path)
        if not lookup.found:
            return lookup
        leaf = lookup.leaf
        if value_kind(value) != value_kind(leaf.value):
            return PathLookup(
                LookupStatus.TYPE_MISMATCH, path, leaf=leaf,
                detail=f"expected {value_kind(leaf.value)}, got {value_kind(value) or type(value).__name__}",
            )
        now = timestamp if timestamp is not None else self._clock()
        leaf.value = value
        leaf.last_changed = now
        self.last_updated = now
        return lookup

    def add_token_weight(self, symbol: str, value: ParamValue, timestamp: Optional[float] = None) -> PathLookup:
        """
        Create the advisory weight leaf for a registered token that has none.

        The leaf takes the default quorum. Returns NOT_A_LEAF when the path
        already exists.
        """
        path = f"{TOKEN_WEIGHT_PREFIX}.{symbol}"
        if self.get(path).status != LookupStatus.NOT_FOUND:
            return PathLookup(LookupStatus.NOT_A_LEAF, path, detail="path already exists")
        weights, detail = self._walk(TOKEN_WEIGHT_PREFIX)
        if not isinstance(weights, ParamBranch):
            return PathLookup(LookupStatus.NOT_FOUND, path, detail=detail or "weights group is a leaf")

        now = timestamp if timestamp is not None else self._clock()
        leaf = ParamOption(
            value=value,
            options=[],
            min_quorum=self.default_quorum(),
            description=f"{symbol} ratio (per LYNX token)",
            last_changed=now,
            advisory=True,
        )
        weights.children[symbol] = leaf
        self.last_updated = now
        logger.info(f"Added weight parameter {path} = {value}")
        return PathLookup(LookupStatus.FOUND, path, leaf=leaf)

    # ── Enumeration ───────────────────────────────────────────────────

    def iter_leaves(self, prefix: str = "") -> Iterator[Tuple[str, ParamOption]]:
        """Yield (path, leaf) for every leaf at or below *prefix*."""
        if prefix:
            start, _ = self._walk(prefix)
            if start is None:
                return
        else:
            start = self._root

        stack: List[Tuple[str, ParamNode]] = [(prefix, start)]
        while stack:
            path, node = stack.pop()
            if isinstance(node, ParamOption):
                yield path, node
                continue
            for key in reversed(list(node.children)):
                stack.append((f"{path}.{key}" if path else key, node.children[key]))

    def composition(self, prefix: str) -> Dict[str, ParamValue]:
        """Current values of every leaf under *prefix*, keyed by full path."""
        return {path: leaf.value for path, leaf in self.iter_leaves(prefix)}

    # ── Quorum / period lookups ───────────────────────────────────────

    def default_quorum(self) -> int:
        value = self.get_value(GOVERNANCE_QUORUM_PATH)
        return value if value_kind(value) == "number" else GOVERNANCE_DEFAULT_MIN_QUORUM

    def required_quorum(self, path: str) -> int:
        """The leaf's own ``min_quorum`` if *path* is a leaf, else the default."""
        lookup = self.get(path)
        if lookup.found and lookup.leaf.min_quorum is not None:
            return lookup.leaf.min_quorum
        return self.default_quorum()

    def voting_period_hours(self) -> float:
        return self.get_value(GOVERNANCE_VOTING_PERIOD_PATH) or 72

    # ── Validation ────────────────────────────────────────────────────

    def validate_change(self, path: str, new_value: Any, enforce_options: bool = True) -> List[str]:
        """
        Check a proposed value against the leaf definition.

        Returns a list of human readable errors (empty when valid).
        """
        lookup = self.get(path)
        if not lookup.found:
            return [f"Parameter path {path} not found ({lookup.detail})"]

        leaf = lookup.leaf
        errors = []
        if value_kind(new_value) != value_kind(leaf.value):
            errors.append(
                f"Value {new_value!r} has the wrong type for {path} "
                f"(expected {value_kind(leaf.value)})"
            )
            return errors

        if enforce_options and not leaf.advisory and leaf.options and new_value not in leaf.options:
            errors.append(
                f"Value {new_value} is not in allowed options: "
                f"{', '.join(str(o) for o in leaf.options)}"
            )
        if leaf.constraints is not None:
            errors.extend(leaf.constraints.violations(new_value))
        return errors

    # ── Serialization ─────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        out = self._root.to_dict()
        out["metadata"] = {
            "version": GOVERNANCE_SCHEMA_VERSION,
            "lastUpdated": iso_timestamp(self.last_updated),
            "totalSupply": json_number(self.total_supply),
            "contractAddress": self.contract_address,
        }
        return out

    def state_hash(self) -> str:
        """SHA-256 over the canonical JSON of the parameter values."""
        values = {path: leaf.value for path, leaf in self.iter_leaves()}
        canonical = json.dumps(values, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def __repr__(self) -> str:
        return f"<ParameterStore leaves={sum(1 for _ in self.iter_leaves())}>"


# ══════════════════════════════════════════════════════════════════════
#  DEFAULTS
# ══════════════════════════════════════════════════════════════════════

def default_parameter_tree(now: Optional[float] = None) -> ParamBranch:
    """Initial governance dials used when no state is loaded."""
    now = time.time() if now is None else now

    def opt(value, options, description, min_quorum=15, advisory=False, constraints=None):
        return ParamOption(
            value=value,
            options=list(options),
            min_quorum=min_quorum,
            description=description,
            last_changed=now,
            constraints=constraints,
            advisory=advisory,
        )

    def branch(**children) -> ParamBranch:
        return ParamBranch(children=dict(children))

    percentage = lambda: ParamConstraints(min=0, max=100)

    return branch(
        rebalancing=branch(
            frequencyHours=opt(12, [4, 6, 12, 24, 48], "How often to check token prices (hours)"),
            thresholds=branch(
                normal=opt(10, [5, 7, 10, 15], "Deviation percentage that triggers normal rebalance"),
                emergency=opt(15, [10, 15, 20, 25], "Deviation percentage that triggers emergency rebalance", 25),
            ),
            cooldownPeriods=branch(
                normal=opt(168, [24, 48, 72, 168], "Hours to wait between normal rebalances"),
                emergency=opt(0, [0, 6, 12, 24], "Hours to wait between emergency rebalances", 20),
            ),
            methods=branch(
                gradual=opt(True, [True, False], "Enable gradual rebalancing approach"),
                maxSlippageTolerance=opt(2.0, [0.5, 1.0, 2.0, 3.0], "Maximum allowed slippage during rebalancing", 20),
            ),
        ),
        treasury=branch(
            weights=branch(
                HBAR=opt(50, [30, 40, 50, 60], "HBAR ratio (per LYNX token)", 20, advisory=True),
                WBTC=opt(4, [2, 4, 6, 8], "WBTC ratio (per LYNX token)", 20, advisory=True),
                SAUCE=opt(30, [20, 30, 40, 50], "SAUCE ratio (per LYNX token)", 15, advisory=True),
                USDC=opt(30, [20, 30, 40, 50], "USDC ratio (per LYNX token)", 15, advisory=True),
                JAM=opt(30, [20, 30, 40, 50], "JAM ratio (per LYNX token)", 15, advisory=True),
                HEADSTART=opt(20, [10, 20, 30, 40], "HEADSTART ratio (per LYNX token)", 15, advisory=True),
            ),
            maxSlippage=branch(
                HBAR=opt(1.0, [0.1, 0.5, 1.0, 2.0], "HBAR max slippage percentage"),
                WBTC=opt(1.5, [0.5, 1.0, 1.5, 2.0], "WBTC max slippage percentage"),
                SAUCE=opt(2.0, [1.0, 2.0, 3.0, 5.0], "SAUCE max slippage percentage"),
                USDC=opt(0.5, [0.1, 0.5, 1.0, 2.0], "USDC max slippage percentage"),
                JAM=opt(3.0, [1.0, 2.0, 3.0, 5.0], "JAM max slippage percentage"),
                HEADSTART=opt(3.0, [1.0, 2.0, 3.0, 5.0], "HEADSTART max slippage percentage"),
            ),
            maxSwapSize=branch(
                HBAR=opt(1000000, [100000, 500000, 1000000, 2000000], "HBAR max swap size (in USD)", 20),
                WBTC=opt(50000, [10000, 25000, 50000, 100000], "WBTC max swap size (in USD)", 20),
                SAUCE=opt(250000, [50000, 100000, 250000, 500000], "SAUCE max swap size (in USD)", 20),
                USDC=opt(500000, [100000, 250000, 500000, 1000000], "USDC max swap size (in USD)", 20),
                JAM=opt(100000, [25000, 50000, 100000, 250000], "JAM max swap size (in USD)", 20),
                HEADSTART=opt(100000, [25000, 50000, 100000, 250000], "HEADSTART max swap size (in USD)", 20),
            ),
        ),
        fees=branch(
            mintingFee=opt(0.2, [0.1, 0.2, 0.3, 0.5], "Fee charged when minting Lynx tokens (percentage)", 25, constraints=percentage()),
            burningFee=opt(0.2, [0.1, 0.2, 0.3, 0.5], "Fee charged when burning Lynx tokens (percentage)", 25, constraints=percentage()),
            operationalFee=opt(0.1, [0.05, 0.1, 0.2, 0.3], "Annual operational fee (percentage)", 25, constraints=percentage()),
            rewardsAllocation=opt(100, [80, 90, 100], "Percentage of fees allocated to token holders", 20, constraints=percentage()),
        ),
        governance=branch(
            quorumPercentage=opt(15, [10, 15, 20, 25, 30], "Default percentage of total supply needed for valid vote", 30,
                                 constraints=ParamConstraints(min=1, max=100)),
            votingPeriodHours=opt(72, [48, 72, 96, 168], "Hours that a parameter vote remains open", 20,
                                  constraints=ParamConstraints(min=1, max=8760)),
            proposalThreshold=opt(1000, [500, 1000, 2500, 5000], "Minimum LYNX tokens needed to propose a parameter change", 20),
            stakingLockPeriod=opt(168, [72, 168, 336, 720], "Hours staked LYNX must be held before withdrawal", 25),
            emergencyOverride=branch(
                enabled=opt(True, [True, False], "Whether emergency override is enabled", 40),
                threshold=opt(25, [20, 25, 30, 35], "Emergency quorum threshold percentage", 40),
                timeLimit=opt(24, [6, 12, 24, 48], "Time limit for emergency actions (hours)", 40),
            ),
        ),
    )
