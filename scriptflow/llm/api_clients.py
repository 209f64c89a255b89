"""
Scriptflow API Clients

HTTP client for OpenAI-compatible chat completion endpoints
(``{base_url}/chat/completions``), which covers OpenAI itself and the
many gateways and local servers that speak the same protocol.
"""

from typing import Any, Dict, Optional

import httpx

from scriptflow.core.config import LLMConfig
from scriptflow.core.env_loader import get_api_key
from scriptflow.core.exceptions import CompletionTimeoutError, MissingConfigError, TransientCompletionError
from scriptflow.core.logging_config import get_logger
from scriptflow.llm.text_completion import CompletionResult, TokenUsage

logger = get_logger("llm.api_clients")

ERROR_BODY_LIMIT = 500


class OpenAICompatibleClient:
    """
    Async chat-completions client.

    Usage:
        async with OpenAICompatibleClient.from_config(config.llm) as client:
            result = await client.generate_text("Summarize...", system_prompt="You are...")
            if result.success:
                print(result.text)
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        temperature: float = 0.3,
        max_tokens: int = 4000,
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        if not api_key:
            raise MissingConfigError(f"{self.__class__.__name__} requires an API key")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_config(cls, config: LLMConfig, http_client: Optional[httpx.AsyncClient] = None) -> 'OpenAICompatibleClient':
        """Build a client, reading the API key from the configured environment variable."""
        api_key = get_api_key(config.api_key_env, ["OPENAI_API_KEY"])
        if not api_key:
            raise MissingConfigError(
                f"No API key found in ${config.api_key_env} or $OPENAI_API_KEY",
                {"env": config.api_key_env}
            )
        return cls(
            api_key=api_key,
            base_url=config.base_url,
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
            http_client=http_client,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _build_body(self, prompt: str, system_prompt: Optional[str], params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        body: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        body.update(params or {})
        return body

    async def generate_text(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> CompletionResult:
        """
        Run one chat completion.

        Returns:
            CompletionResult; HTTP errors and empty completions come back as
            unsuccessful results carrying the status code

        Raises:
            CompletionTimeoutError: The request exceeded the client timeout
            TransientCompletionError: The request never got an HTTP response
        """
        body = self._build_body(prompt, system_prompt, params)
        model = body["model"]
        url = f"{self.base_url}/chat/completions"

        try:
            response = await self.client.post(url, json=body, headers=self._headers(), timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise CompletionTimeoutError(self.timeout) from e
        except httpx.TransportError as e:
            raise TransientCompletionError(f"Network error calling {url}: {e}") from e

        if response.status_code >= 400:
            message = f"HTTP {response.status_code}: {response.text[:ERROR_BODY_LIMIT]}"
            logger.warning(f"Completion request failed - {message}")
            return CompletionResult.failure(message, status_code=response.status_code, model=model)

        try:
            data = response.json()
        except ValueError:
            return CompletionResult.failure("Response body is not JSON", status_code=response.status_code, model=model)

        choices = data.get("choices") or []
        text = ""
        if choices:
            text = (choices[0].get("message") or {}).get("content") or ""
        if not text.strip():
            return CompletionResult.failure("Empty completion", model=model)

        usage = TokenUsage.from_dict(data.get("usage"))
        logger.debug(f"Completion from {data.get('model', model)}: {len(text)} chars, {usage.total_tokens if usage else 0} tokens")
        return CompletionResult.ok(text, model=data.get("model", model), usage=usage)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> 'OpenAICompatibleClient':
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
