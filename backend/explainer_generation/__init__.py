from .client import (
    KnowledgeFallbackGenerator,
    ProviderGenerationClient,
    extract_json_object,
    parse_candidate,
    provider_candidates,
)
from .prompt import build_messages, build_system_prompt, context_snapshot

__all__ = [
    "KnowledgeFallbackGenerator",
    "ProviderGenerationClient",
    "build_messages",
    "build_system_prompt",
    "context_snapshot",
    "extract_json_object",
    "parse_candidate",
    "provider_candidates",
]
