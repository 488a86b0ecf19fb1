"""Inference backend for tool classification and chat titles.

The Ollama client talks to the local Ollama REST API over httpx. Every
generate call first waits for its model to be available; a model becomes
available when it is listed as installed or after a successful pull.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from event_bus import EventBus
from shared.config import OllamaSettings
from shared.errors import UpstreamUnavailable
from shared.logging import get_logger
from shared.models import (
    DownloadStatus,
    ModelDownloadProgress,
    ToolAnalysisResult,
    ToolDescriptor,
)

from tool_analysis.download import DownloadProgressThrottle
from tool_analysis.heuristics import classify, infer_is_read, infer_is_write

logger = get_logger(__name__)

EXAMPLE_OUTPUT = {
    "getTodo": {"is_read": True, "is_write": False},
    "createTodo": {"is_read": False, "is_write": True},
}

ANALYSIS_PROMPT = """You are an expert at analyzing API tools. Your task is to analyze tools and output ONLY valid JSON.

EXAMPLE OUTPUT FORMAT:
{example}

For each tool, determine:
- is_read: true if the tool reads/retrieves/fetches/gets/lists/searches data WITHOUT modifying anything
- is_write: true if the tool creates/updates/deletes/modifies/changes data

Common patterns:
- Tools with names containing "get", "list", "read", "search", "fetch", "find" are usually is_read: true
- Tools with names containing "create", "update", "delete", "add", "remove", "set", "write", "modify" are usually is_write: true
- Some tools can be both read AND write (e.g., "executeQuery" might read or write depending on the query)

Tools to analyze:
{tools}

CRITICAL: Your response MUST be valid JSON that matches this EXACT structure:
{{
  "toolName1": {{"is_read": boolean, "is_write": boolean}},
  "toolName2": {{"is_read": boolean, "is_write": boolean}}
}}

Replace toolName1, toolName2 with actual tool names from the input.
Every tool MUST have both is_read and is_write as boolean values (true or false).
Output ONLY the JSON object, starting with {{ and ending with }}"""

TITLE_PROMPT = """Generate a short, concise title (3-6 words) for a chat conversation that includes the following messages:

{messages}

The title should capture the main topic or theme of the conversation. Respond with ONLY the title, no quotes, no explanation."""


class InferenceClient(ABC):
    """
    Abstract inference backend.

    Implementations raise ``UpstreamUnavailable`` when the backend cannot
    be reached; content problems are handled inside ``analyze_tools``.
    """

    @abstractmethod
    async def analyze_tools(
        self,
        tools: list[ToolDescriptor]
    ) -> dict[str, ToolAnalysisResult]:
        """
        Classify tools as read and/or write.

        Args:
            tools: Tools to classify

        Returns:
            Mapping of tool name to classification, one entry per tool

        Raises:
            UpstreamUnavailable: If the backend is unreachable
        """
        pass

    @abstractmethod
    async def generate_chat_title(self, messages: list[str]) -> str:
        """Generate a short title for a conversation."""
        pass


def _json_object(data: Any, operation: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise UpstreamUnavailable(
            f"Ollama {operation} returned {type(data).__name__}, expected an object",
            upstream="ollama"
        )
    return data


def parse_analysis(
    raw: str,
    tools: list[ToolDescriptor]
) -> dict[str, ToolAnalysisResult]:
    """
    Turn a model response into one classification per tool.

    Missing tools, non-object entries and non-boolean fields fall back to
    the heuristic, field by field where possible.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Inference response is not valid JSON, using heuristic")
        data = {}

    if not isinstance(data, dict):
        data = {}

    results: dict[str, ToolAnalysisResult] = {}
    for tool in tools:
        entry = data.get(tool.name)

        if not isinstance(entry, dict):
            if entry is not None:
                logger.warning("Tool analysis has invalid format", tool=tool.name)
            results[tool.name] = classify(tool.name, tool.description)
            continue

        is_read = entry.get("is_read")
        is_write = entry.get("is_write")
        results[tool.name] = ToolAnalysisResult(
            is_read=is_read if isinstance(is_read, bool) else infer_is_read(tool.name, tool.description),
            is_write=is_write if isinstance(is_write, bool) else infer_is_write(tool.name, tool.description),
        )

    return results


class OllamaClient(InferenceClient):
    """Ollama REST client."""

    def __init__(
        self,
        settings: Optional[OllamaSettings] = None,
        events: Optional[EventBus] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        """
        Initialize the Ollama client.

        Args:
            settings: Ollama settings
            events: Event bus for download progress (optional)
            transport: Optional httpx transport, used by tests
        """
        self.settings = settings or OllamaSettings()
        self.events = events
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._availability: dict[str, asyncio.Event] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.settings.host.rstrip("/"),
                timeout=self.settings.request_timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _model_event(self, model: str) -> asyncio.Event:
        if model not in self._availability:
            self._availability[model] = asyncio.Event()
        return self._availability[model]

    def mark_available(self, model: str) -> None:
        self._model_event(model).set()

    def is_available(self, model: str) -> bool:
        return model in self._availability and self._availability[model].is_set()

    async def wait_for_model(self, model: str, timeout: Optional[float] = None) -> None:
        """
        Suspend until a model is available.

        Raises:
            UpstreamUnavailable: If the model is not available within the timeout
        """
        timeout = self.settings.model_wait_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._model_event(model).wait(), timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable(
                f"Model '{model}' not available after {timeout}s",
                upstream="ollama",
                model=model
            ) from e

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        format: Optional[str] = None,
        options: Optional[dict[str, Any]] = None
    ) -> str:
        """
        Generate a completion.

        Returns:
            The response text

        Raises:
            UpstreamUnavailable: If the model never becomes available or the call fails
        """
        model = model or self.settings.general_model
        await self.wait_for_model(model)

        body: dict[str, Any] = {"model": model, "prompt": prompt, "stream": False}
        if format:
            body["format"] = format
        if options:
            body["options"] = options

        client = await self._get_client()
        try:
            response = await client.post("/api/generate", json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamUnavailable(
                f"Ollama generate failed: {e.response.status_code}",
                upstream="ollama",
                status=e.response.status_code
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable(f"Ollama generate failed: {e}", upstream="ollama") from e

        return _json_object(data, "generate").get("response", "")

    async def list_models(self) -> list[dict[str, Any]]:
        """List installed models."""
        client = await self._get_client()
        try:
            response = await client.get("/api/tags")
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamUnavailable(
                f"Ollama list failed: {e.response.status_code}",
                upstream="ollama",
                status=e.response.status_code
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable(f"Ollama list failed: {e}", upstream="ollama") from e

        return _json_object(data, "list").get("models", [])

    def _broadcast_progress(self, progress: ModelDownloadProgress) -> None:
        if self.events is not None:
            self.events.publish("ollama-model-download-progress", progress)

    async def pull(self, model: str) -> None:
        """
        Pull a model, broadcasting throttled progress.

        On failure an ``error`` status is broadcast and the error re-raised.
        """
        throttle = DownloadProgressThrottle(model)
        client = await self._get_client()

        try:
            async with client.stream(
                "POST", "/api/pull", json={"name": model, "stream": True}, timeout=None
            ) as response:
                if response.is_error:
                    raise UpstreamUnavailable(
                        f"Ollama pull failed: {response.status_code}",
                        upstream="ollama",
                        status=response.status_code
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except ValueError:
                        continue
                    if not isinstance(chunk, dict):
                        continue
                    if chunk.get("error"):
                        raise UpstreamUnavailable(
                            f"Ollama pull failed: {chunk['error']}", upstream="ollama"
                        )

                    progress = throttle.update(chunk)
                    if progress is not None:
                        self._broadcast_progress(progress)

            if not throttle.completed:
                self._broadcast_progress(ModelDownloadProgress(
                    model=model,
                    status=DownloadStatus.COMPLETED,
                    progress=100,
                    message="Download complete!",
                ))
        except Exception as e:
            self._broadcast_progress(ModelDownloadProgress(
                model=model,
                status=DownloadStatus.ERROR,
                progress=0,
                message=str(e),
            ))
            logger.error("Model pull failed", model=model, error=str(e))
            if isinstance(e, httpx.HTTPError):
                raise UpstreamUnavailable(f"Ollama pull failed: {e}", upstream="ollama") from e
            raise

        self.mark_available(model)
        logger.info("Model pulled", model=model)

    async def wait_for_server(self) -> None:
        """Retry listing models until the server answers."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(UpstreamUnavailable),
            stop=stop_after_attempt(self.settings.server_ready_attempts),
            wait=wait_fixed(1),
            reraise=True
        ):
            with attempt:
                await self.list_models()
        logger.info("Ollama server is ready")

    async def ensure_models_available(self) -> None:
        """
        Mark installed models available and pull missing required ones.

        Download failures are logged; they never propagate.
        """
        try:
            await self.wait_for_server()
            installed = [m.get("name") for m in await self.list_models()]
        except UpstreamUnavailable as e:
            logger.error("Ollama server unavailable, models not ensured", error=str(e))
            return

        for name in installed:
            if name:
                self.mark_available(name)

        missing = [
            required.model
            for required in self.settings.required_models
            if required.model not in installed
        ]
        logger.info("Downloading required models", count=len(missing), models=missing)

        async def _pull(model: str) -> None:
            try:
                await self.pull(model)
            except Exception as e:
                logger.error("Failed to download model", model=model, error=str(e))

        await asyncio.gather(*(_pull(model) for model in missing))

    async def analyze_tools(
        self,
        tools: list[ToolDescriptor]
    ) -> dict[str, ToolAnalysisResult]:
        if not tools:
            return {}

        tools_json = json.dumps(
            [
                {"name": t.name, "description": t.description, "inputSchema": t.input_schema}
                for t in tools
            ],
            indent=2
        )
        prompt = ANALYSIS_PROMPT.format(
            example=json.dumps(EXAMPLE_OUTPUT, indent=2),
            tools=tools_json,
        )

        raw = await self.generate(prompt, format="json")
        logger.debug("Raw analysis response", tools=[t.name for t in tools])
        return parse_analysis(raw, tools)

    async def generate_chat_title(self, messages: list[str]) -> str:
        prompt = TITLE_PROMPT.format(messages="\n\n".join(messages))
        title = await self.generate(prompt, options={"temperature": 0.5, "num_predict": 15})
        return title.strip().strip('"').strip()
