"""
dialgov Dial Governance

Provides:
  - ParameterStore / ParamOption / ParamBranch          (parameters.py)
  - MessageCursor                                       (cursor.py)
  - ParameterVote / VoteLedger / QuorumEvaluator        (voting.py)
  - MessageClassifier / VoteResultMessage / ChangeHistory (messages.py)
  - ExecutionDispatcher / JsonRpcRatioEndpoint          (execution.py)
  - ResultPublisher                                     (publisher.py)
  - GovernanceEngine                                    (engine.py)
"""

from .parameters import (
    LookupStatus,
    ParamBranch,
    ParamConstraints,
    ParameterStore,
    ParamOption,
    PathLookup,
    default_parameter_tree,
)
from .cursor import MessageCursor
from .voting import (
    ParameterVote,
    QuorumEvaluator,
    QuorumTally,
    VoteLedger,
    VotingSession,
    validate_vote,
)
from .messages import (
    ChangeHistory,
    Classification,
    MessageClassifier,
    ParameterChangeRecord,
    VoteResultMessage,
    build_envelope,
    is_snapshot_message,
)
from .execution import (
    DispatchReceipt,
    ExecutionDispatcher,
    JsonRpcRatioEndpoint,
    RatioEndpoint,
)
from .results import CallResult, ErrorKind, capture
from .publisher import ResultPublisher, build_state_snapshot
from .engine import GovernanceEngine

__all__ = [
    # Parameters
    "LookupStatus",
    "ParamBranch",
    "ParamConstraints",
    "ParameterStore",
    "ParamOption",
    "PathLookup",
    "default_parameter_tree",
    # Cursor
    "MessageCursor",
    # Voting
    "ParameterVote",
    "QuorumEvaluator",
    "QuorumTally",
    "VoteLedger",
    "VotingSession",
    "validate_vote",
    # Messages
    "ChangeHistory",
    "Classification",
    "MessageClassifier",
    "ParameterChangeRecord",
    "VoteResultMessage",
    "build_envelope",
    "is_snapshot_message",
    # Execution
    "DispatchReceipt",
    "ExecutionDispatcher",
    "JsonRpcRatioEndpoint",
    "RatioEndpoint",
    # Results
    "CallResult",
    "ErrorKind",
    "capture",
    # Publisher / engine
    "ResultPublisher",
    "build_state_snapshot",
    "GovernanceEngine",
]
