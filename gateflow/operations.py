"""HTTP glue for steps whose work is done by a remote generation provider."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .config import GateflowConfig, load_config
from .contracts import jsonable
from .steps import BatchItem, StepContext

logger = logging.getLogger(__name__)


class HttpOperation:
    """Operation that POSTs step arguments to ``base_url + path``.

    For an item of a batch step the request body is the step arguments
    with the item under ``"item"``. The caller's token, when present, is
    forwarded as a Bearer ``Authorization`` header. Non-2xx responses raise
    ``httpx.HTTPStatusError``, which fails the step (or the single item).

    Example::

        registry.register(StepDefinition(
            name="images",
            arguments_model=ImageArgs,
            operation=HttpOperation("https://provider.example", "/images"),
            batch=BatchSpec(items_field="segments"),
        ))
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        path: str = "",
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[GateflowConfig] = None,
    ) -> None:
        if base_url is None or timeout is None:
            config = config or load_config()
            base_url = base_url or config.provider.base_url
            timeout = timeout if timeout is not None else config.provider.request_timeout
        if not base_url:
            raise ValueError("HttpOperation needs a base_url (or provider.base_url)")
        self.url = base_url.rstrip("/") + "/" + path.lstrip("/") if path else base_url
        self.timeout = timeout
        self._client = client

    def _payload(self, arguments: Any) -> Dict[str, Any]:
        if isinstance(arguments, BatchItem):
            body = jsonable(arguments.arguments)
            body = dict(body) if isinstance(body, dict) else {"arguments": body}
            body["item"] = jsonable(arguments.item)
            return body
        body = jsonable(arguments)
        return body if isinstance(body, dict) else {"arguments": body}

    def _headers(self, context: StepContext) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if context.auth.token:
            headers["Authorization"] = f"Bearer {context.auth.token}"
        return headers

    async def __call__(
        self, step_name: str, arguments: Any, context: StepContext
    ) -> Any:
        payload = self._payload(arguments)
        headers = self._headers(context)
        logger.info(
            f"POST {self.url} step={step_name} run_id={context.run_id}"
            + (f" item={context.item_id}" if context.item_id else "")
        )
        if self._client is not None:
            response = await self._client.post(
                self.url, json=payload, headers=headers, timeout=self.timeout
            )
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload, headers=headers)
        response.raise_for_status()
        return response.json()
