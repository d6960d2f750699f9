class AgentVendorError(Exception):
    """Base exception for the Agent Vendor backend."""

    pass


class UnknownModelError(AgentVendorError):
    """Raised when a model row or provider cannot be resolved."""

    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Unknown model '{model_id}'")


class ProviderError(AgentVendorError):
    """Raised when an LLM provider fails mid-generation."""

    pass


class ToolExecutionError(AgentVendorError):
    """Raised by a tool handler when it cannot produce a result."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"{tool_name}: {message}")
