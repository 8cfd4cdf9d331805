from __future__ import annotations

from .agent_source import AgentChunk, AgentChunkKind, AgentSource, AgentStreamError, ScriptedAgentSource
from .approval import ApprovalChoice, ApprovalState, ApprovalStateError, CompletionResult
from .approval_controller import ApprovalController
from .cancel import CancellationToken, TurnCancelled
from .config import StewardConfig, load_config
from .error_codes import ErrorCode
from .event_bus import EventBus
from .events import TurnEvent, TurnEventKind
from .orchestrator import TurnContext, TurnOrchestrator, TurnResult
from .policy import should_auto_execute

__all__ = [
    "AgentChunk",
    "AgentChunkKind",
    "AgentSource",
    "AgentStreamError",
    "ApprovalChoice",
    "ApprovalController",
    "ApprovalState",
    "ApprovalStateError",
    "CancellationToken",
    "CompletionResult",
    "ErrorCode",
    "EventBus",
    "ScriptedAgentSource",
    "StewardConfig",
    "TurnCancelled",
    "TurnContext",
    "TurnEvent",
    "TurnEventKind",
    "TurnOrchestrator",
    "TurnResult",
    "load_config",
    "should_auto_execute",
]
