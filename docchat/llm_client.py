"""Async wrapper around the Ollama HTTP API used for answers and embeddings."""
import asyncio
import httpx
from typing import Any, List, Dict, Optional
import structlog

from docchat import config

logger = structlog.get_logger()

TAGS_TIMEOUT = 5.0


class OllamaClient:
    """Talks to a local Ollama server for chat completions and embeddings."""

    def __init__(
        self,
        base_url: str = None,
        timeout: float = None,
        concurrency: int = None,
    ):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            timeout: Request timeout in seconds (defaults to config.LLM_TIMEOUT)
            concurrency: Max embedding requests in flight for embed_texts()
        """
        self.base_url = (base_url or config.OLLAMA_BASE_URL).rstrip("/")
        self.timeout = timeout or config.LLM_TIMEOUT
        self.concurrency = concurrency or config.EMBEDDING_CONCURRENCY

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout: float = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=timeout or self.timeout) as client:
                response = await client.request(method, url, json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.ConnectError as e:
            logger.error("ollama_unreachable", path=path, base_url=self.base_url, error=str(e))
            raise
        except httpx.HTTPStatusError as e:
            logger.error("ollama_bad_status", path=path, status_code=e.response.status_code, error=str(e))
            raise
        except httpx.HTTPError as e:
            logger.error("ollama_request_failed", path=path, error=str(e))
            raise

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
    ) -> Dict:
        """Request a single (non-streamed) chat completion.

        Args:
            messages: Chat history as dicts with 'role' and 'content'
            model: Chat model name (defaults to config.CHAT_MODEL)
            temperature: Optional sampling temperature

        Returns:
            Raw Ollama response; the answer is under ['message']['content']

        Raises:
            httpx.HTTPError: If Ollama is unreachable or rejects the request
        """
        model = model or config.CHAT_MODEL
        payload: Dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        if temperature is not None:
            payload["options"] = {"temperature": temperature}

        logger.info("llm_chat_started", model=model, turns=len(messages))
        data = await self._request("POST", "/api/chat", payload)
        logger.info(
            "llm_chat_finished",
            model=model,
            answer_chars=len(data.get("message", {}).get("content", "")),
        )
        return data

    async def chat_text(self, messages: List[Dict[str, str]], **kwargs) -> str:
        """Run chat() and return only the assistant text.

        Raises:
            RuntimeError: If the model returned no content
        """
        data = await self.chat(messages, **kwargs)
        content = data.get("message", {}).get("content", "")
        if not content:
            logger.error("empty_ollama_response", response=data)
            raise RuntimeError("Empty response from LLM")
        return content

    async def embeddings(self, prompt: str, model: str = None) -> Dict:
        """Embed one piece of text; the vector is under ['embedding']."""
        model = model or config.EMBEDDING_MODEL
        data = await self._request("POST", "/api/embeddings", {"model": model, "prompt": prompt})
        logger.debug("text_embedded", model=model, chars=len(prompt), dimension=len(data.get("embedding", [])))
        return data

    async def embed_texts(self, texts: List[str], model: str = None) -> List[List[float]]:
        """Embed many texts with bounded concurrency, preserving order.

        Raises:
            RuntimeError: If any text comes back with an empty embedding
        """
        if not texts:
            return []

        semaphore = asyncio.Semaphore(self.concurrency)

        async def embed_one(text: str) -> List[float]:
            async with semaphore:
                response = await self.embeddings(prompt=text, model=model)
            embedding = response.get("embedding", [])
            if not embedding:
                raise RuntimeError("Empty embedding returned for text")
            return embedding

        embeddings = await asyncio.gather(*(embed_one(text) for text in texts))

        logger.info("texts_embedded", count=len(embeddings))
        return list(embeddings)

    async def list_models(self) -> List[str]:
        """Names of the models pulled into the Ollama server."""
        data = await self._request("GET", "/api/tags", timeout=TAGS_TIMEOUT)
        return [m["name"] for m in data.get("models", [])]


# Shared by the app, the ingest pipeline and the CLI scripts
ollama_client = OllamaClient()
