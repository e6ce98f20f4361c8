"""Agent Bridge: delegate coding tasks to Codex or Trae agent processes."""

__version__ = "0.1.0"

from agentbridge.bridge import AgentBridge
from agentbridge.config import BridgeConfig, load_config
from agentbridge.models import (
    AgentResponse,
    ApprovalDecision,
    ApprovalRequest,
    Backend,
    ToolCall,
)

__all__ = [
    "AgentBridge",
    "AgentResponse",
    "ApprovalDecision",
    "ApprovalRequest",
    "Backend",
    "BridgeConfig",
    "ToolCall",
    "__version__",
    "load_config",
]
