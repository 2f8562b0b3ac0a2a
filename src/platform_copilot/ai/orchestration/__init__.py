"""Conversation orchestration core."""

# Data model
from .types import (
    CapabilityCall,
    ChatHistoryResult,
    ChatResponse,
    CompletionResult,
    ConversationContext,
    MessageSnapshot,
    MissingInformationAnalysis,
    ProactiveSuggestion,
    TokenUsageMetrics,
    TurnStatus,
)

# Pipeline stages
from .conversation_store import ConversationStore, StoreStats
from .history_builder import HistoryBuilder, HistoryOptions
from .prompt_assembler import AssembledPrompt, PromptAssembler
from .completion_invoker import CompletionInvoker, RetryPolicy
from .response_interpreter import (
    AliasProbingAdapter,
    MetadataAdapter,
    OpenAIMetadataAdapter,
    ResponseInterpreter,
    select_metadata_adapter,
)
from .follow_up import FollowUpAnalyzer, FollowUpPatterns
from .suggestions import SuggestionEngine, SuggestionRule

# Facade
from .orchestrator import ChatOrchestrator

__all__ = [
    "AliasProbingAdapter",
    "AssembledPrompt",
    "CapabilityCall",
    "ChatHistoryResult",
    "ChatOrchestrator",
    "ChatResponse",
    "CompletionInvoker",
    "CompletionResult",
    "ConversationContext",
    "ConversationStore",
    "FollowUpAnalyzer",
    "FollowUpPatterns",
    "HistoryBuilder",
    "HistoryOptions",
    "MessageSnapshot",
    "MetadataAdapter",
    "MissingInformationAnalysis",
    "OpenAIMetadataAdapter",
    "ProactiveSuggestion",
    "PromptAssembler",
    "ResponseInterpreter",
    "RetryPolicy",
    "StoreStats",
    "SuggestionEngine",
    "SuggestionRule",
    "TokenUsageMetrics",
    "TurnStatus",
    "select_metadata_adapter",
]
