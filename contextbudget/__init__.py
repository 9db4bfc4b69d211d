__version__ = "0.1.0"

# Core imports
from .compression import (
    CompactionResult,
    CompressionEngine,
    ModelSummarizer,
    Summarizer,
    TemplateSummarizer,
    extract_facts,
    format_summary_context,
)
from .config import (
    CompressionConfig,
    ModelInfo,
    NormalizedCompressionConfig,
    SessionConfig,
    load_compression_config,
    load_session_config,
    normalize_compression_config,
)
from .errors import (
    ConfigurationError,
    ContextBudgetError,
    IrreducibleContextError,
    SessionCorruptedError,
    SessionNotFoundError,
    SessionPersistenceError,
    SummarizationError,
)
from .events import (
    CompactionFinished,
    CompactionStarted,
    ContextEvent,
    ContextWarning,
    EventNotifier,
)
from .ledger import TokenLedger, estimate_tokens
from .policy import Decision, advance, evaluate
from .session import (
    ContextBudgetManager,
    ContextStats,
    Session,
    SessionListItem,
    SessionMetadata,
    SessionSnapshot,
    SessionStore,
)
from .types import (
    ContentBlock,
    ExtractedFacts,
    LogEntry,
    Message,
    PrunedRecord,
    Role,
    Summary,
    TextBlock,
    ThresholdState,
    TokenUsage,
    ToolCallBlock,
    ToolResultBlock,
    ToolUsageSummary,
    TurnUsage,
)

__all__ = [
    # Orchestration
    "ContextBudgetManager",
    "ContextStats",
    # Ledger and policy
    "TokenLedger",
    "estimate_tokens",
    "Decision",
    "evaluate",
    "advance",
    # Compression
    "CompressionEngine",
    "CompactionResult",
    "Summarizer",
    "TemplateSummarizer",
    "ModelSummarizer",
    "extract_facts",
    "format_summary_context",
    # Events
    "EventNotifier",
    "ContextEvent",
    "ContextWarning",
    "CompactionStarted",
    "CompactionFinished",
    # Sessions
    "Session",
    "SessionMetadata",
    "SessionSnapshot",
    "SessionStore",
    "SessionListItem",
    # Configuration
    "CompressionConfig",
    "NormalizedCompressionConfig",
    "SessionConfig",
    "ModelInfo",
    "load_compression_config",
    "load_session_config",
    "normalize_compression_config",
    # Types
    "Role",
    "Message",
    "Summary",
    "ContentBlock",
    "TextBlock",
    "ToolCallBlock",
    "ToolResultBlock",
    "LogEntry",
    "ExtractedFacts",
    "ToolUsageSummary",
    "PrunedRecord",
    "TokenUsage",
    "TurnUsage",
    "ThresholdState",
    # Errors
    "ContextBudgetError",
    "ConfigurationError",
    "SummarizationError",
    "SessionPersistenceError",
    "SessionNotFoundError",
    "SessionCorruptedError",
    "IrreducibleContextError",
]
