"""Capability registry: which features a provider/model pair supports."""

from __future__ import annotations

from dataclasses import dataclass, replace

CAN_USE_TOOLS = "can-use-tools"
CAN_STREAM = "can-stream"
IS_MULTIMODAL = "is-multimodal"
CAN_EXECUTE_TOOLS_IN_PARALLEL = "can-execute-tools-in-parallel"
SUPPORTS_SESSION_CONTINUATION = "supports-session-continuation"
SUPPORTS_TOP_LEVEL_INSTRUCTIONS = "supports-top-level-instructions"

FEATURES: frozenset[str] = frozenset(
    {
        CAN_USE_TOOLS,
        CAN_STREAM,
        IS_MULTIMODAL,
        CAN_EXECUTE_TOOLS_IN_PARALLEL,
        SUPPORTS_SESSION_CONTINUATION,
        SUPPORTS_TOP_LEVEL_INSTRUCTIONS,
    }
)

# Model-name fragments for endpoints that neither stream nor call tools.
_NON_CHAT_MODEL_MARKERS = ("embed", "embedding", "image")


@dataclass(frozen=True)
class Capabilities:
    """Feature flags for one configured client."""

    tools: bool = False
    streaming: bool = False
    multimodal: bool = False
    parallel_tools: bool = False
    session_continuation: bool = False
    instructions: bool = False

    def implements(self, feature: str) -> bool:
        """Return whether *feature* is supported. Unknown names are unsupported."""
        if feature == CAN_USE_TOOLS:
            return self.tools
        if feature == CAN_STREAM:
            return self.streaming
        if feature == IS_MULTIMODAL:
            return self.multimodal
        if feature == CAN_EXECUTE_TOOLS_IN_PARALLEL:
            return self.parallel_tools
        if feature == SUPPORTS_SESSION_CONTINUATION:
            return self.session_continuation
        if feature == SUPPORTS_TOP_LEVEL_INSTRUCTIONS:
            return self.instructions
        return False

    def supported(self) -> frozenset[str]:
        """Return the set of feature names this instance implements."""
        return frozenset(f for f in FEATURES if self.implements(f))


def is_non_chat_model(model: str) -> bool:
    """Whether *model* names an embedding or image-generation endpoint."""
    name = model.lower()
    return any(marker in name for marker in _NON_CHAT_MODEL_MARKERS)


def for_model(base: Capabilities, model: str) -> Capabilities:
    """Narrow provider-wide capabilities for a specific model name."""
    if is_non_chat_model(model):
        return replace(base, streaming=False, tools=False, parallel_tools=False)
    return base
