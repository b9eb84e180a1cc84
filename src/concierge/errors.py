"""Concierge error taxonomy.

Every error carries a ``user_message``: the only text allowed to cross the
chat transport boundary. Internal details stay in the exception args and
the logs.
"""

from __future__ import annotations


class ConciergeError(Exception):
    """Base exception for Concierge errors."""

    user_message = "Something went wrong while processing your request."

    def __init__(self, message: str = "", *, user_message: str | None = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


# --- Pre-flight validation ---


class MissingParameter(ConciergeError):
    """Raised when a command is missing a required parameter."""

    def __init__(self, missing: list[str], usage: str = ""):
        self.missing = missing
        text = f"Error: Missing required parameters: {', '.join(missing)}."
        if usage:
            text += f"\nUsage: {usage}"
        super().__init__(f"missing parameters: {missing}", user_message=text)


class UnknownCommand(ConciergeError):
    """Raised when no handler is registered for a verb."""

    def __init__(self, command: str, help_text: str):
        self.command = command
        super().__init__(
            f"unknown command: {command}",
            user_message=f"Unknown task: {command}\n\n{help_text}",
        )


class InvalidParameter(ConciergeError):
    """Raised when a command parameter has a value outside its allowed set."""

    def __init__(self, name: str, value: str, allowed: str):
        self.name = name
        self.value = value
        super().__init__(
            f"invalid value for {name}: {value!r}",
            user_message=f"Error: Invalid value for {name}: '{value}'. Expected {allowed}.",
        )


class UnsupportedFormat(ConciergeError):
    """Raised when an audio file extension is not accepted."""

    def __init__(self, extension: str):
        self.extension = extension
        super().__init__(
            f"unsupported file format: {extension}",
            user_message=f"Unsupported file format: {extension or '(none)'}",
        )


class FileTooLarge(ConciergeError):
    """Raised when an audio file exceeds the size limit."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            f"file too large: {size} > {limit} bytes",
            user_message=f"File too large. Maximum size is {limit // (1024 * 1024)}MB",
        )


# --- Classifier / resolution ---


class InvalidSchema(ConciergeError):
    """Raised when classifier output does not validate against its schema."""

    user_message = "Could not understand the page structure."


class ClassifierUnavailable(ConciergeError):
    """Raised when the classifier call itself fails."""

    user_message = "The language model service is unavailable. Please try again later."


class NoCandidates(ConciergeError):
    """Raised when there is nothing on the page to choose from."""

    user_message = "The page did not contain the expected elements."


# --- Automation pipeline ---


class NavigationFailure(ConciergeError):
    """Raised when the portal cannot be reached or navigated."""

    user_message = "Error: Failed to reach the portal. Please try again later."


class MissingCredentialField(ConciergeError):
    """Raised when a mandatory login element cannot be resolved."""

    user_message = "Error: Could not find the login form on the portal."


class InvoiceNotFound(ConciergeError):
    """Raised when no invoice record could be resolved."""

    user_message = "Error: No invoice information was found."


class DownloadTimeout(ConciergeError):
    """Raised when the invoice download does not complete in time."""

    user_message = "Error: The invoice download did not complete in time."


# --- Backends ---


class BackendUnavailable(ConciergeError):
    """Raised when a backend cannot run at all in this environment."""


class ChainExhausted(ConciergeError):
    """Raised when every backend of a fallback chain failed."""

    def __init__(self, last_reason: str, attempts: list[tuple[str, str]] | None = None):
        self.last_reason = last_reason
        self.attempts = attempts or []
        super().__init__(
            f"all backends failed, last error: {last_reason}",
            user_message="Transcription failed: no transcription service could process the audio.",
        )


# --- Sessions / cancellation ---


class SessionExpired(ConciergeError):
    """Raised once when an expired session is observed on access."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(
            f"session expired: {conversation_id}",
            user_message="Your previous request expired. Please start again.",
        )


class OperationCancelled(ConciergeError):
    """Raised when an external call times out or its cancel token fires."""

    user_message = "The operation took too long and was cancelled."
