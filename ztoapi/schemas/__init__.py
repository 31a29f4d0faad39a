from .chat import (
    ChatCompletionRequest,
    ChatMessage,
    CompletionResult,
    ModelInfo,
    ModelsResponse,
    Usage,
    build_chunk,
    build_completion_body,
)
from .platform import ModelResolution, ModelRoute, PlatformDescriptor, PlatformFlow

__all__ = [
    "ChatCompletionRequest",
    "ChatMessage",
    "CompletionResult",
    "ModelInfo",
    "ModelResolution",
    "ModelRoute",
    "ModelsResponse",
    "PlatformDescriptor",
    "PlatformFlow",
    "Usage",
    "build_chunk",
    "build_completion_body",
]
