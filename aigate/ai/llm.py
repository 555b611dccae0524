"""
InferenceClient - Structured calls to an OpenAI-compatible chat completions API.

invoke_model sends a system prompt plus messages, asks for a JSON object and
validates it against a pydantic return type.
"""

import json
from typing import Any, Callable, TypeVar

import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError

from aigate.ai.schema import ChatMessage
from aigate.services.errors import (
    RequestTimeoutError,
    ResponseValidationError,
    TransportError,
    UpstreamConnectionError,
)
from aigate.settings import Settings, global_settings

T = TypeVar("T", bound=BaseModel)

ProgressCallback = Callable[[str], None]


class InferenceClient:
    """
    Async client for the remote inference service.

    Usage:
        async with InferenceClient() as client:
            result = await client.invoke_model(
                system="Classify the sentiment of the text.",
                messages=[ChatMessage(content="I love it")],
                return_type=SentimentResult,
                model="gpt-4o-mini",
            )
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        service_id: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or global_settings
        self._base_url = (base_url or settings.inference_base_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.inference_api_key
        self._timeout = timeout or settings.inference_timeout
        self.service_id = service_id or settings.inference_service_id
        self.default_temperature = settings.temperature
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
            )
        return self._http_client

    async def invoke_model(
        self,
        system: str,
        messages: list[ChatMessage],
        return_type: type[T],
        model: str,
        temperature: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> T:
        """
        Call the model and parse its JSON reply into return_type.

        Raises:
            TransportError: On timeouts, network failures and non-2xx responses
            ResponseValidationError: If the reply is not valid JSON for return_type
        """
        body: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": self._system_with_schema(system, return_type)},
                *({"role": m.role.value, "content": m.content} for m in messages),
            ],
            "response_format": {"type": "json_object"},
        }
        body["temperature"] = (
            temperature if temperature is not None else self.default_temperature
        )

        self._progress(on_progress, "request_sent")
        payload = await self._post("/chat/completions", body)
        self._progress(on_progress, "response_received")

        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ResponseValidationError(
                f"Malformed completion payload: {e}", service_id=self.service_id
            ) from e

        try:
            result = return_type.model_validate_json(content)
        except ValidationError as e:
            logger.warning(
                f"Model {model} returned invalid {return_type.__name__}: "
                f"{e.error_count()} error(s)"
            )
            raise ResponseValidationError(
                f"Response does not match {return_type.__name__}: {e}",
                service_id=self.service_id,
            ) from e

        self._progress(on_progress, "validated")
        return result

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        """Execute the actual HTTP request."""
        client = await self._get_http_client()
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            response = await client.post(
                f"{self._base_url}{path}",
                json=body,
                headers=headers,
                timeout=self._timeout,
            )
            response.raise_for_status()
            return response.json()

        except httpx.TimeoutException as e:
            raise RequestTimeoutError(self._timeout, service_id=self.service_id) from e

        except httpx.HTTPStatusError as e:
            raise TransportError(
                e.response.status_code,
                e.response.text[:200],
                service_id=self.service_id,
            ) from e

        except httpx.RequestError as e:
            raise UpstreamConnectionError(str(e), service_id=self.service_id) from e

        except json.JSONDecodeError as e:
            raise ResponseValidationError(
                f"Inference service returned non-JSON body: {e}",
                service_id=self.service_id,
            ) from e

    @staticmethod
    def _system_with_schema(system: str, return_type: type[BaseModel]) -> str:
        schema = json.dumps(return_type.model_json_schema(), ensure_ascii=False)
        return f"{system}\n\nRespond with a single JSON object matching this schema:\n{schema}"

    @staticmethod
    def _progress(callback: ProgressCallback | None, stage: str) -> None:
        if callback is None:
            return
        try:
            callback(stage)
        except Exception as e:
            logger.warning(f"Progress callback failed at '{stage}': {e}")

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    async def __aenter__(self) -> "InferenceClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
