"""
dialgov Constants

This module consolidates the global constants and environment configuration
used throughout the codebase. Constants are organized by category for easy
reference and maintenance.
"""
import ast
from decimal import Decimal
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
    'LOG_TO_FILE':                     'False',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024 # 10MB
LOG_BACKUP_COUNT = 5
LOG_PAYLOAD_PREVIEW = 100  # Characters of a raw message payload shown in logs


# ==================================================================================
# WIRE PROTOCOL
# ==================================================================================
PROTOCOL_TAG = 'hcs-10'
LARGE_CONTENT_PREFIX = 'hcs://1/'

OP_MESSAGE = 'message'
OP_VOTE_RESULT = 'vote_result'
OP_STATE_SNAPSHOT = 'state_snapshot'
OP_PARAMETER_CHANGE = 'parameter_change'

VOTE_TYPE_PARAMETER = 'PARAMETER_VOTE'
VOTE_TYPE_MULTI_RATIO = 'MULTI_RATIO_VOTE'

RESULT_PARAMETER_UPDATE = 'PARAMETER_UPDATE'
RESULT_VOTE_FAILED = 'VOTE_FAILED'

EXECUTION_EXECUTED = 'executed'
EXECUTION_FAILED = 'failed'

SNAPSHOT_INITIAL_STATE = 'INITIAL_STATE'
SNAPSHOT_PARAMETER_CHANGE = 'PARAMETER_CHANGE'
SNAPSHOT_VOTE_CONCLUDED = 'VOTE_CONCLUDED'
SNAPSHOT_SCHEDULED_HEARTBEAT = 'SCHEDULED_HEARTBEAT'
SNAPSHOT_MANUAL = 'MANUAL'


# ==================================================================================
# GOVERNANCE PARAMETERS
# ==================================================================================
GOVERNANCE_SCHEMA_VERSION = '1.0.0'
GOVERNANCE_TOTAL_SUPPLY = Decimal('100000')  # LYNX eligible for quorum calculations
GOVERNANCE_DEFAULT_MIN_QUORUM = 15           # percent
GOVERNANCE_QUORUM_PATH = 'governance.quorumPercentage'
GOVERNANCE_VOTING_PERIOD_PATH = 'governance.votingPeriodHours'
GOVERNANCE_CHANGE_HISTORY_LIMIT = 50
GOVERNANCE_SNAPSHOT_RECENT_CHANGES = 10

TOKEN_WEIGHT_PREFIX = 'treasury.weights'
# Legacy symbols folded into their canonical weight leaf
TOKEN_ALIASES = {'SAUCERSWAP': 'SAUCE'}
REBALANCING_PREFIX = 'rebalancing'


# ==================================================================================
# SCHEDULING
# ==================================================================================
INGEST_POLL_INTERVAL_SECONDS = 60
SESSION_SWEEP_INTERVAL_SECONDS = 60
HEARTBEAT_INTERVAL_SECONDS = 30 * 24 * 60 * 60  # monthly


# ==================================================================================
# EXECUTION ENDPOINT
# ==================================================================================
# Argument order of the vault contract's updateRatios(...) call
RATIO_TOKEN_ORDER = ('HBAR', 'WBTC', 'SAUCE', 'USDC', 'JAM', 'HEADSTART')
RATIO_MIN = 1
RATIO_MAX = 100
RATIO_FUNCTION_NAME = 'updateRatios'
RATIO_GAS_LIMIT = 300_000
CONNECTION_TIMEOUT = 10.0  # seconds


# ==================================================================================
# CONFIGURATION WRAPPERS
# ==================================================================================
class ConfigString(str):
    """
    String subclass that stores a default value.
    """
    def __new__(cls, value, default):
        obj = str.__new__(cls, value)
        obj._default = default
        return obj

    def default(self):
        return self._default

class ConfigBool(int):
    """
    Int subclass acting as a boolean that stores a default value.
    """
    def __new__(cls, value, default):
        obj = int.__new__(cls, bool(value))
        obj._default = default
        return obj

    def default(self):
        return self._default

    def __repr__(self):
        return str(bool(self))

    def __str__(self):
        return str(bool(self))

    def __eq__(self, other):
        return bool(self) == other

    def __hash__(self):
        return hash(bool(self))


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
namespace = globals()

def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Avoids exceptions by only calling ast.literal_eval for known literals.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if not s:
        return v
    if s.casefold() in {"true", "false"}:
        return ast.literal_eval(s.title())
    return v

for key, default_raw in LOGGER_DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        namespace[key] = ConfigString(value_raw, default_val)
