from abc import ABC, abstractmethod


class AIProvider(ABC):
    """Abstract base class for all AI providers."""

    DEFAULT_REASONING_MODEL: str = ""

    def __init__(
        self,
        api_key: str,
        reasoning_model: str | None = None,
        timeout_seconds: float = 120,
    ):
        self.api_key = api_key
        self._reasoning_model = reasoning_model
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    async def chat(
        self,
        messages: list[dict],
        model: str,
        system: str = "",
        json_response: bool = False,
    ) -> dict:
        """Send a chat request to the provider.

        Args:
            messages: List of message dicts with role and content.
            model: Model identifier to use.
            system: Optional system prompt.
            json_response: Ask the model for a single JSON object.

        Returns:
            dict with content, tokens_in, tokens_out, model.
        """
        ...

    @abstractmethod
    async def chat_with_vision(
        self,
        messages: list[dict],
        image_bytes: bytes,
        model: str,
        system: str = "",
        json_response: bool = False,
    ) -> dict:
        """Send a chat request that includes an image.

        Returns:
            dict with content, tokens_in, tokens_out, model.
        """
        ...

    def get_reasoning_model(self) -> str:
        """Return the reasoning (higher-capability) model identifier."""
        return self._reasoning_model or self.DEFAULT_REASONING_MODEL
