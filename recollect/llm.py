"""
LLM Backends - text completion for merging and relation classification.

Backends:
- local: OpenAI-compatible chat endpoint (Ollama, LM Studio, llama.cpp)
- openrouter: hosted OpenAI-compatible endpoint, needs an API key
- claude: the `claude` CLI run as a subprocess
- none: LLM features disabled

Every failure (transport error, HTTP error, timeout, malformed or empty
response) surfaces as LLMError so callers have one thing to catch.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

LOCAL_BASE_URL = "http://localhost:11434/v1"
LOCAL_DEFAULT_MODEL = "qwen2.5:7b"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_DEFAULT_MODEL = "anthropic/claude-3.5-haiku"
CLAUDE_DEFAULT_MODEL = "haiku"


class LLMError(RuntimeError):
    """LLM call failed: unreachable, timed out, or returned nothing usable."""


class LLMBackend(ABC):
    """Base class for completion backends."""

    name = "base"

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int = 500,
        timeout: float = 30.0,
        system_prompt: Optional[str] = None,
        temperature: float = 0.1
    ) -> str:
        """Return the completion text, or raise LLMError."""

    async def close(self) -> None:
        pass


class OpenAICompatibleBackend(LLMBackend):
    """Chat-completions client over httpx."""

    name = "openai-compatible"

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.extra_headers = extra_headers or {}
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", **self.extra_headers}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int = 500,
        timeout: float = 30.0,
        system_prompt: Optional[str] = None,
        temperature: float = 0.1
    ) -> str:
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=float(timeout),
                transport=self._transport,
                follow_redirects=False
            ) as client:
                response = await client.post("/chat/completions", json=payload, headers=self._headers())
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM request timed out after {timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"LLM endpoint returned HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise LLMError(f"LLM request failed: {e}") from e

        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError("Malformed completion response") from e

        if not text or not str(text).strip():
            raise LLMError("Empty completion")
        return str(text).strip()


class ClaudeCLIBackend(LLMBackend):
    """Runs `claude -p` with the prompt on stdin."""

    name = "claude"

    def __init__(self, model: str = CLAUDE_DEFAULT_MODEL, cli_path: str = "claude"):
        self.model = model
        self.cli_path = cli_path

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int = 500,
        timeout: float = 30.0,
        system_prompt: Optional[str] = None,
        temperature: float = 0.1
    ) -> str:
        # The CLI has no separate system channel in print mode
        full_prompt = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
        args = ["-p", "--no-session-persistence", "--model", self.model]

        proc = None
        try:
            proc = await asyncio.create_subprocess_exec(
                self.cli_path, *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(full_prompt.encode()),
                timeout=timeout
            )
        except asyncio.TimeoutError as e:
            if proc and proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise LLMError(f"claude CLI timed out after {timeout}s") from e
        except OSError as e:
            raise LLMError(f"Could not run claude CLI: {e}") from e

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[:200] if stderr else ""
            raise LLMError(f"claude CLI exited with {proc.returncode}: {detail}")

        text = stdout.decode(errors="replace").strip()
        if not text:
            raise LLMError("Empty completion")
        return text


def create_backend(config) -> Optional[LLMBackend]:
    """Build the configured backend once; None when LLM features are off."""
    backend = (config.llm_backend or "none").lower()

    if backend == "none":
        return None
    if backend == "local":
        return OpenAICompatibleBackend(
            base_url=config.llm_base_url or LOCAL_BASE_URL,
            model=config.llm_model or LOCAL_DEFAULT_MODEL,
            api_key=config.llm_api_key
        )
    if backend == "openrouter":
        if not config.llm_api_key:
            logger.warning("OpenRouter backend selected without an API key; LLM features disabled")
            return None
        return OpenAICompatibleBackend(
            base_url=config.llm_base_url or OPENROUTER_BASE_URL,
            model=config.llm_model or OPENROUTER_DEFAULT_MODEL,
            api_key=config.llm_api_key,
            extra_headers={"X-Title": "recollect"}
        )
    if backend == "claude":
        return ClaudeCLIBackend(
            model=config.llm_model or CLAUDE_DEFAULT_MODEL,
            cli_path=config.claude_cli_path
        )

    raise ValueError(f"Unknown LLM backend '{config.llm_backend}'. Valid: local, openrouter, claude, none")
