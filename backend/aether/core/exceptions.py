"""Error taxonomy shared by the orchestration services and the HTTP layer."""


class AetherError(RuntimeError):
    """Base class for errors raised by Aether services."""
    pass


class MissingCredential(AetherError):
    """No usable API key exists for the chosen provider."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(
            f"No API key found for {provider}. "
            "Please add one in your settings or environment variables."
        )


class ModelNotFound(AetherError):
    """The requested model and every fallback model are absent from the catalog."""

    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Model not found: {model_id}")


class UnsupportedProvider(AetherError):
    """A catalog model names a provider with no configured endpoint."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unsupported provider: {provider}")


class QuotaExceeded(AetherError):
    """Admission control rejected the request."""

    def __init__(self, message: str, *, remaining: int = 0, limit: int | None = None):
        self.remaining = remaining
        self.limit = limit
        super().__init__(message)


class ProviderStreamError(AetherError):
    """Generation failed while the provider was streaming."""

    def __init__(self, message: str, *, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_overloaded(self) -> bool:
        text = str(self).lower()
        return self.status_code in (429, 503) or "overloaded" in text


class ToolExecutionError(AetherError):
    """Raised when a tool execution fails."""
    pass


class ToolArgumentSchemaError(ToolExecutionError):
    """Tool arguments did not match the tool's input schema."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"Invalid arguments for {tool_name}: {message}")


class ChatNotFound(AetherError):
    pass


class MessageNotFound(AetherError):
    pass


class ResearchSessionNotFound(AetherError):
    pass


class ImageNotFound(AetherError):
    pass


class AccessDenied(AetherError):
    pass


class InvalidOperation(AetherError):
    """The requested mutation is not allowed for the target's current state."""
    pass
