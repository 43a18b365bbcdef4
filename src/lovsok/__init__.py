"""Lovsok - hybrid retrieval and tool-calling agent for Norwegian legal documents."""

__version__ = "0.1.0"

# Request path
from .assistant import AssistantResponse, run_assistant
from .services import ServiceRegistry, build_services

# Agent
from .agent import AgentLoop, AgentRunResult, ReasoningModel, compute_timeout_budget
from .evidence import EvidenceAccumulator, evidence_key
from .tools import ToolCall, ToolCallError, parse_tool_call, tool_declarations

# Retrieval
from .chunker import ChunkOptions, chunk_document
from .ingest import ArchiveIngestor, IngestResult
from .search import HybridSearchEngine, reciprocal_rank_fusion
from .reranking import Reranker
from .store import ArchiveStore

# Types
from .types import (
    AgentError,
    AgentState,
    ConfigurationError,
    Evidence,
    IngestionError,
    LovsokError,
    SearchFilters,
    SearchResult,
)

__all__ = [
    # request path
    "AssistantResponse",
    "run_assistant",
    "ServiceRegistry",
    "build_services",
    # agent
    "AgentLoop",
    "AgentRunResult",
    "ReasoningModel",
    "compute_timeout_budget",
    "EvidenceAccumulator",
    "evidence_key",
    "ToolCall",
    "ToolCallError",
    "parse_tool_call",
    "tool_declarations",
    # retrieval
    "ChunkOptions",
    "chunk_document",
    "ArchiveIngestor",
    "IngestResult",
    "HybridSearchEngine",
    "reciprocal_rank_fusion",
    "Reranker",
    "ArchiveStore",
    # types
    "AgentError",
    "AgentState",
    "ConfigurationError",
    "Evidence",
    "IngestionError",
    "LovsokError",
    "SearchFilters",
    "SearchResult",
]
