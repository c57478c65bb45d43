"""Tests for LLM backends and backend selection."""

import json
import os
import stat
from pathlib import Path

import httpx
import pytest

from recollect.config import Settings
from recollect.llm import (
    ClaudeCLIBackend,
    LLMBackend,
    LLMError,
    OpenAICompatibleBackend,
    create_backend,
)


def backend_with(handler, **kwargs):
    return OpenAICompatibleBackend(
        base_url="http://llm.test/v1",
        model="test-model",
        transport=httpx.MockTransport(handler),
        **kwargs
    )


def completion(text):
    return httpx.Response(200, json={"choices": [{"message": {"content": text}}]})


class TestOpenAICompatibleBackend:

    @pytest.mark.asyncio
    async def test_posts_chat_completion(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return completion("  merged text  ")

        backend = backend_with(handler, api_key="secret")
        text = await backend.complete("Merge these", system_prompt="Be brief", max_tokens=50)

        assert text == "merged text"
        assert seen["url"] == "http://llm.test/v1/chat/completions"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["model"] == "test-model"
        assert seen["body"]["max_tokens"] == 50
        assert seen["body"]["messages"] == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Merge these"},
        ]

    @pytest.mark.asyncio
    async def test_http_error(self):
        backend = backend_with(lambda request: httpx.Response(503, text="overloaded"))
        with pytest.raises(LLMError, match="503"):
            await backend.complete("x")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(LLMError, match="timed out"):
            await backend_with(handler).complete("x", timeout=1.0)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(LLMError):
            await backend_with(handler).complete("x")

    @pytest.mark.asyncio
    async def test_malformed_and_empty_responses(self):
        with pytest.raises(LLMError, match="Malformed"):
            await backend_with(lambda r: httpx.Response(200, json={"choices": []})).complete("x")
        with pytest.raises(LLMError, match="Empty"):
            await backend_with(lambda r: completion("   ")).complete("x")
        with pytest.raises(LLMError):
            await backend_with(lambda r: httpx.Response(200, text="not json")).complete("x")


def script(directory, body):
    path = Path(directory) / "fake-claude"
    path.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return str(path)


@pytest.mark.skipif(os.name != "posix", reason="shell scripts stand in for the CLI")
class TestClaudeCLIBackend:

    @pytest.mark.asyncio
    async def test_prompt_goes_to_stdin(self, temp_storage):
        backend = ClaudeCLIBackend(cli_path=script(temp_storage, "cat"))
        text = await backend.complete("the prompt", system_prompt="system")
        assert text == "system\n\nthe prompt"

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, temp_storage):
        backend = ClaudeCLIBackend(cli_path=script(temp_storage, "echo bad >&2; exit 3"))
        with pytest.raises(LLMError, match="exited with 3"):
            await backend.complete("x")

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, temp_storage):
        backend = ClaudeCLIBackend(cli_path=script(temp_storage, "sleep 5"))
        with pytest.raises(LLMError, match="timed out"):
            await backend.complete("x", timeout=0.1)

    @pytest.mark.asyncio
    async def test_missing_binary(self, temp_storage):
        backend = ClaudeCLIBackend(cli_path=str(Path(temp_storage) / "nope"))
        with pytest.raises(LLMError):
            await backend.complete("x")


class TestCreateBackend:

    def test_base_class_is_abstract(self):
        with pytest.raises(TypeError):
            LLMBackend()

        class NoComplete(LLMBackend):
            name = "partial"

        with pytest.raises(TypeError):
            NoComplete()

    def test_none(self, temp_storage):
        assert create_backend(Settings(storage_path=temp_storage, llm_backend="none")) is None

    def test_local_defaults(self, temp_storage):
        backend = create_backend(Settings(storage_path=temp_storage, llm_backend="local"))
        assert isinstance(backend, OpenAICompatibleBackend)
        assert backend.base_url == "http://localhost:11434/v1"
        assert backend.model == "qwen2.5:7b"

    def test_openrouter_needs_key(self, temp_storage):
        assert create_backend(Settings(storage_path=temp_storage, llm_backend="openrouter")) is None

        backend = create_backend(Settings(
            storage_path=temp_storage, llm_backend="openrouter", llm_api_key="k", llm_model="m"
        ))
        assert backend.model == "m"
        assert backend._headers()["Authorization"] == "Bearer k"

    def test_claude(self, temp_storage):
        backend = create_backend(Settings(storage_path=temp_storage, llm_backend="claude"))
        assert isinstance(backend, ClaudeCLIBackend)
        assert backend.model == "haiku"

    def test_unknown(self, temp_storage):
        with pytest.raises(ValueError):
            create_backend(Settings(storage_path=temp_storage, llm_backend="gpt-magic"))
