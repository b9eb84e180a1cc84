"""Concierge: chat-driven invoice retrieval and audio transcription."""

__version__ = "0.1.0"

from concierge.bot import Attachment, ChatTransport, ConciergeBot, InboundMessage
from concierge.classifier import GroqClassifier, classify_structured
from concierge.config import ConciergeConfig
from concierge.errors import ConciergeError
from concierge.fallback import BackendDescriptor, BackendResult, FallbackChain
from concierge.invoice import Credentials, InvoicePipeline
from concierge.resolver import CandidateElement, CandidateKind, TargetResolver
from concierge.router import CommandRouter, parse_command
from concierge.sessions import SessionMode, SessionStore
from concierge.transcription import TranscriptionOptions, TranscriptionService

__all__ = [
    "Attachment",
    "ChatTransport",
    "ConciergeBot",
    "InboundMessage",
    "GroqClassifier",
    "classify_structured",
    "ConciergeConfig",
    "ConciergeError",
    "BackendDescriptor",
    "BackendResult",
    "FallbackChain",
    "Credentials",
    "InvoicePipeline",
    "CandidateElement",
    "CandidateKind",
    "TargetResolver",
    "CommandRouter",
    "parse_command",
    "SessionMode",
    "SessionStore",
    "TranscriptionOptions",
    "TranscriptionService",
]
