"""genbridge: one normalized client over several LLM wire protocols.

Public API:
    - Client: generate() and stream() against a configured provider
    - Config: provider, model, credentials and client-wide defaults
    - GenerateRequest / Message / ContentItem / ToolDefinition: request model
    - GenerateResponse / StreamEvent: response model
    - Options: per-request generation parameters
"""

from __future__ import annotations

import logging

from genbridge.capabilities import (
    CAN_EXECUTE_TOOLS_IN_PARALLEL,
    CAN_STREAM,
    CAN_USE_TOOLS,
    IS_MULTIMODAL,
    SUPPORTS_SESSION_CONTINUATION,
    SUPPORTS_TOP_LEVEL_INSTRUCTIONS,
    Capabilities,
)
from genbridge.client import Client
from genbridge.config import Config
from genbridge.errors import (
    ConfigurationError,
    ContinuationError,
    GenbridgeError,
    InternalError,
    ObserverError,
    ProtocolError,
    ProviderError,
    RateLimitError,
    TransportError,
    UnimplementedFeatureError,
    UnsupportedContentError,
)
from genbridge.lifecycle import CallContext, CallInfo, Observer, UsageListener
from genbridge.models import (
    Choice,
    ContentItem,
    GenerateRequest,
    GenerateResponse,
    Message,
    StreamEvent,
    ToolCall,
    ToolDefinition,
    Usage,
)
from genbridge.options import Options
from genbridge.providers import Provider
from genbridge.retry import RetryPolicy
from genbridge.session import SessionStore
from genbridge.stream import EventStream

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("genbridge")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("genbridge").addHandler(logging.NullHandler())

__all__ = [
    "CAN_EXECUTE_TOOLS_IN_PARALLEL",
    "CAN_STREAM",
    "CAN_USE_TOOLS",
    "IS_MULTIMODAL",
    "SUPPORTS_SESSION_CONTINUATION",
    "SUPPORTS_TOP_LEVEL_INSTRUCTIONS",
    "CallContext",
    "CallInfo",
    "Capabilities",
    "Choice",
    "Client",
    "Config",
    "ConfigurationError",
    "ContentItem",
    "ContinuationError",
    "EventStream",
    "GenbridgeError",
    "GenerateRequest",
    "GenerateResponse",
    "InternalError",
    "Message",
    "Observer",
    "ObserverError",
    "Options",
    "ProtocolError",
    "Provider",
    "ProviderError",
    "RateLimitError",
    "RetryPolicy",
    "SessionStore",
    "StreamEvent",
    "ToolCall",
    "ToolDefinition",
    "TransportError",
    "UnimplementedFeatureError",
    "UnsupportedContentError",
    "Usage",
    "UsageListener",
]
