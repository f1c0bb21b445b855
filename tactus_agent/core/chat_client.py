"""Streaming client for OpenAI-compatible chat completion APIs."""

import json
import logging
from typing import AsyncIterator, Dict, List, Optional

import httpx
from pydantic import BaseModel

from tactus_agent.core.errors import ProtocolParseError, TransportError

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


class ModelInfo(BaseModel):
    id: str
    name: str


def parse_sse_line(line: str) -> Optional[str]:
    """Extract the content fragment carried by one SSE line.

    Returns None for lines that carry no content (comments, keep-alives, other
    fields, role-only deltas). Raises ProtocolParseError for a ``data:`` line
    whose payload is not valid JSON.
    """
    line = line.strip()
    if not line.startswith(SSE_DATA_PREFIX):
        return None

    data = line[len(SSE_DATA_PREFIX) :].strip()
    if not data or data == SSE_DONE:
        return None

    try:
        chunk = json.loads(data)
    except json.JSONDecodeError as e:
        raise ProtocolParseError(f"Invalid JSON in SSE data line: {e}") from e

    choices = chunk.get("choices") if isinstance(chunk, dict) else None
    if not choices:
        return None
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content or None


def is_done_line(line: str) -> bool:
    line = line.strip()
    return (
        line.startswith(SSE_DATA_PREFIX)
        and line[len(SSE_DATA_PREFIX) :].strip() == SSE_DONE
    )


class ChatCompletionClient:
    """Talks to ``{base_url}/v1/chat/completions`` and ``{base_url}/v1/models``."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = 120.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
            logger.debug(f"Created chat HTTP client with timeout: {self.timeout}s")
        return self._client

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def fetch_models(self) -> List[ModelInfo]:
        """List the models offered by the endpoint. Errors yield an empty list."""
        url = f"{self.base_url}/v1/models"
        try:
            response = await self.client.get(url, headers=self._headers())
            if response.status_code != 200:
                logger.error(f"Models API returned status {response.status_code}")
                return []

            models = []
            for item in response.json().get("data", []) or []:
                model_id = item.get("id")
                if not model_id:
                    continue
                models.append(ModelInfo(id=model_id, name=item.get("name") or model_id))
            logger.info(f"Found {len(models)} models at {self.base_url}")
            return models
        except Exception as e:
            logger.error(f"Failed to fetch models: {e}")
            return []

    async def stream_chat(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        """Stream content fragments for one completion request.

        Raises:
            TransportError: on connection failures, timeouts and non-2xx replies.
        """
        url = f"{self.base_url}/v1/chat/completions"
        payload = {"model": self.model, "messages": messages, "stream": True}
        logger.debug(f"Requesting completion from {url} with {len(messages)} messages")

        try:
            async with self.client.stream(
                "POST", url, headers=self._headers(), json=payload
            ) as response:
                if response.status_code < 200 or response.status_code >= 300:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"API error: {response.status_code} {body[:200]}".strip(),
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if is_done_line(line):
                        return
                    try:
                        fragment = parse_sse_line(line)
                    except ProtocolParseError as e:
                        logger.debug(f"Skipping malformed SSE line: {e}")
                        continue
                    if fragment:
                        yield fragment
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out after {self.timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Request failed: {e}") from e

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
