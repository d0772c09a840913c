from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import requests

# Probed in order when the service wraps its text in a mapping.
REPLY_FIELDS = ("response", "text", "description")


class GenerationError(RuntimeError):
    """Raised when the text-generation backend returns an error or malformed response."""


class WorkersAIClient:
    """
    Minimal HTTP client for the Cloudflare Workers AI ``run`` endpoint.

    The endpoint accepts either a chat-style ``messages`` list or a single
    flattened ``prompt`` string, so both shapes are exposed.
    """

    def __init__(
        self,
        base_url: str,
        account_id: str = "",
        api_token: str = "",
        timeout: float = 60.0,
    ) -> None:
        self.base_url = base_url.replace("{account_id}", account_id)
        self.account_id = account_id
        self.api_token = api_token
        self.timeout = timeout

    def run_messages(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Any:
        payload: Dict[str, Any] = {"messages": messages}
        return self.run(model, _with_sampling(payload, max_tokens, temperature))

    def run_prompt(
        self,
        *,
        model: str,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Any:
        payload: Dict[str, Any] = {"prompt": prompt}
        return self.run(model, _with_sampling(payload, max_tokens, temperature))

    def run(self, model: str, payload: Dict[str, Any]) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        url = self.base_url.rstrip("/") + "/" + model.lstrip("/")
        try:
            response = requests.post(
                url,
                headers=headers,
                data=json.dumps(payload),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise GenerationError(f"Workers AI request failed: {exc}") from exc
        if response.status_code >= 400:
            raise GenerationError(
                f"Workers AI returned {response.status_code}: {response.text}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise GenerationError("Failed to decode Workers AI response as JSON.") from exc
        if isinstance(body, dict) and body.get("success") is False:
            raise GenerationError(f"Workers AI reported failure: {body.get('errors')}")
        # The REST API wraps model output in an envelope.
        if isinstance(body, dict) and "result" in body:
            return body["result"]
        return body


def _with_sampling(
    payload: Dict[str, Any],
    max_tokens: Optional[int],
    temperature: Optional[float],
) -> Dict[str, Any]:
    if max_tokens:
        payload["max_tokens"] = max_tokens
    if temperature is not None:
        payload["temperature"] = temperature
    return payload


def unpack_reply(reply: Any) -> str:
    """
    Normalise a generation reply into plain text.

    Text is returned as is. Mappings are searched for the well-known reply
    fields first, then for any non-empty string value, and are serialised
    whole as a last resort. Lists are serialised as JSON.
    """
    if isinstance(reply, str):
        return reply.strip()
    if reply is None:
        return ""
    if isinstance(reply, dict):
        for key in REPLY_FIELDS:
            value = reply.get(key)
            if isinstance(value, str) and value:
                return value.strip()
        for value in reply.values():
            if isinstance(value, str) and value:
                return value.strip()
        return json.dumps(reply)
    if isinstance(reply, (list, tuple)):
        return json.dumps(list(reply))
    return str(reply).strip()
