"""
LLM Client Abstraction Layer.

Provides a unified interface for chat completions that can switch between:
- OpenAI or any OpenAI-compatible API
- Ollama (local inference)

The configured client lives on the pipeline runtime; views and the answer
composer receive it from there.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Dict, Optional

import httpx
from django.conf import settings

from apps.indexing.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class LLMMessage:
    """A message in a chat conversation."""
    role: str  # "system", "user", or "assistant"
    content: str


@dataclass
class LLMResponse:
    """Response from an LLM call."""
    content: str
    model: str
    usage: Optional[Dict[str, int]] = None  # token usage if available


class LLMError(ProviderError):
    """Raised when LLM call fails."""
    pass


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients."""

    @abstractmethod
    def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 500,
    ) -> LLMResponse:
        """
        Send a chat completion request.

        Args:
            messages: List of messages in the conversation
            temperature: Sampling temperature (0-1)
            max_tokens: Maximum tokens in response

        Returns:
            LLMResponse with the model's response

        Raises:
            LLMError: If the request fails
        """
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model name being used."""
        pass


class OllamaClient(BaseLLMClient):
    """LLM client for Ollama local inference."""

    def __init__(self, base_url: Optional[str] = None, model: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = base_url or getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
        self.model = model or getattr(settings, 'OLLAMA_CHAT_MODEL', 'llama3.2')
        self.timeout = timeout or getattr(settings, 'OLLAMA_CHAT_TIMEOUT', 600)

    @property
    def model_name(self) -> str:
        return self.model

    def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 500,
    ) -> LLMResponse:
        """Send chat request to Ollama."""
        logger.info(f"Calling Ollama chat: model={self.model}, temp={temperature}")

        try:
            with httpx.Client(timeout=float(self.timeout)) as client:
                response = client.post(
                    f"{self.base_url}/api/chat",
                    json={
                        "model": self.model,
                        "messages": [{"role": m.role, "content": m.content} for m in messages],
                        "stream": False,
                        "options": {
                            "temperature": temperature,
                            "num_predict": max_tokens,
                        }
                    }
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Ollama HTTP error: {e}")
            raise LLMError(f"Ollama service error: {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            logger.error("Ollama request timed out")
            raise LLMError("Ollama service timed out") from e
        except httpx.RequestError as e:
            logger.error(f"Ollama connection error: {e}")
            raise LLMError("Could not connect to Ollama") from e

        content = data.get("message", {}).get("content", "")
        if not content:
            raise LLMError("Empty response from Ollama")

        logger.info(f"Ollama response: {len(content)} chars")
        return LLMResponse(content=content, model=self.model)


class OpenAIClient(BaseLLMClient):
    """
    LLM client for OpenAI-compatible APIs.

    Works with: OpenAI, Azure OpenAI, Groq, Together, local servers, etc.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key or getattr(settings, 'OPENAI_API_KEY', '')
        self.base_url = (base_url or getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com')).rstrip('/')
        self.model = model or getattr(settings, 'OPENAI_CHAT_MODEL', 'gpt-4o-mini')
        self.timeout = timeout or getattr(settings, 'OPENAI_TIMEOUT', 120)

        if not self.api_key:
            raise LLMError("OPENAI_API_KEY not configured")

    @property
    def model_name(self) -> str:
        return self.model

    def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 500,
    ) -> LLMResponse:
        """Send chat request to /v1/chat/completions."""
        logger.info(f"Calling OpenAI API: model={self.model}, temp={temperature}")

        try:
            with httpx.Client(timeout=float(self.timeout)) as client:
                response = client.post(
                    f"{self.base_url}/v1/chat/completions",
                    json={
                        "model": self.model,
                        "messages": [{"role": m.role, "content": m.content} for m in messages],
                        "temperature": temperature,
                        "max_tokens": max_tokens,
                    },
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    }
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"OpenAI HTTP error: {e}")
            raise LLMError(f"OpenAI API error: {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            logger.error("OpenAI request timed out")
            raise LLMError("OpenAI API timed out") from e
        except httpx.RequestError as e:
            logger.error(f"OpenAI connection error: {e}")
            raise LLMError("Could not connect to OpenAI API") from e

        choices = data.get("choices", [])
        if not choices:
            raise LLMError("No choices in OpenAI response")

        content = choices[0].get("message", {}).get("content", "")
        if not content:
            raise LLMError("Empty response from OpenAI")

        logger.info(f"OpenAI response: {len(content)} chars")
        return LLMResponse(content=content, model=self.model, usage=data.get("usage"))


# =============================================================================
# Client Factory
# =============================================================================

def build_llm_client() -> BaseLLMClient:
    """
    Build the LLM client selected by the LLM_PROVIDER setting.

    - "openai" (default): OpenAI or compatible API
    - "ollama": Local Ollama inference
    """
    provider = getattr(settings, 'LLM_PROVIDER', 'openai').lower()

    if provider == 'ollama':
        logger.info("Using Ollama for LLM inference")
        return OllamaClient()

    logger.info("Using OpenAI-compatible API for LLM inference")
    return OpenAIClient()
