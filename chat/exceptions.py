class ChatError(Exception):
    """Base class for chat failures."""


class ValidationError(ChatError):
    """Submitted content was rejected before anything was stored."""


class UpstreamError(ChatError):
    """The completion service could not produce a reply."""
