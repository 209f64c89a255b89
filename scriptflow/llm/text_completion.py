"""
Text Completion Capability

The pipeline talks to language models only through :class:`TextCompletion`.
An implementation returns a :class:`CompletionResult`; an HTTP-level failure
comes back as an unsuccessful result with a status code, while network
failures and timeouts raise :class:`TransientCompletionError` subclasses.
The pipeline retries the two differently.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, runtime_checkable

RETRYABLE_STATUS_CODES = (408, 409, 425, 429)


@dataclass
class TokenUsage:
    """Token accounting reported by the provider."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['TokenUsage']:
        if not data:
            return None
        prompt = int(data.get("prompt_tokens") or data.get("input_tokens") or 0)
        completion = int(data.get("completion_tokens") or data.get("output_tokens") or 0)
        total = int(data.get("total_tokens") or prompt + completion)
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass
class CompletionResult:
    """Outcome of one completion call."""
    success: bool
    text: str = ""
    error: Optional[str] = None
    status_code: Optional[int] = None
    usage: Optional[TokenUsage] = None
    model: str = ""

    @classmethod
    def ok(cls, text: str, model: str = "", usage: Optional[TokenUsage] = None) -> 'CompletionResult':
        return cls(success=True, text=text, model=model, usage=usage)

    @classmethod
    def failure(cls, error: str, status_code: Optional[int] = None, model: str = "") -> 'CompletionResult':
        return cls(success=False, error=error, status_code=status_code, model=model)

    @property
    def retryable(self) -> bool:
        """Rate limits, server errors and status-less failures are worth retrying."""
        if self.success:
            return False
        if self.status_code is None:
            return True
        return self.status_code in RETRYABLE_STATUS_CODES or self.status_code >= 500

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens if self.usage else 0


@runtime_checkable
class TextCompletion(Protocol):
    """Anything that can turn a prompt into text."""

    async def generate_text(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> CompletionResult:
        ...
