"""Role runner: HTTP connection to a text-completion backend.

The orchestrator injects a role runner matching the protocol:

    async def __call__(self, role: str, context: RoleContext) -> str: ...

`role` is one of "director", "world", "character", "summarizer". The
runner owns prompt construction and generation parameters; the
orchestrator only hands it the context and parses whatever text comes back.

HttpRoleRunner renders the role's Handlebars template and posts it, with
that role's sampler, to a KoboldCpp or OpenAI-compatible backend.
Tests use a scripted runner (see conftest.py) instead.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

import httpx

from roleforge.config import Settings
from roleforge.interfaces import RoleRunner
from roleforge.models import Sampler
from roleforge.pipeline.context import RoleContext
from roleforge.prompts import render_role_prompt

logger = logging.getLogger(__name__)

__all__ = ["HttpRoleRunner", "RoleError", "RoleRunner"]

ProviderFormat = Literal["koboldcpp", "openai"]

# Section headings of the default prompts. A model that starts writing one
# has finished its answer and begun inventing the next prompt.
PROMPT_SECTION_STOPS: tuple[str, ...] = ("\n## ",)
# Each retry asks for a cooler sample, down to this temperature.
MIN_RETRY_TEMPERATURE = 0.1
RETRY_TEMPERATURE_STEP = 0.2


class RoleError(RuntimeError):
    """The backend could not produce a completion for a role call."""

    def __init__(self, role: str, message: str) -> None:
        super().__init__(f"{role}: {message}")
        self.role = role


def stop_sequences(role: str, context: RoleContext, sampler: Sampler) -> list[str]:
    """Configured stops, prompt-section stops, and for characters the persona's turn marker."""
    stops = list(sampler.stop) + list(PROMPT_SECTION_STOPS)
    persona = context.envelope.persona_name
    if role == "character" and persona:
        stops.append(f"\n{persona}:")
    return list(dict.fromkeys(s for s in stops if s))


def retry_temperature(sampler: Sampler, attempt: int) -> float:
    if attempt <= 1:
        return sampler.temperature
    cooled = sampler.temperature - RETRY_TEMPERATURE_STEP * (attempt - 1)
    return round(max(min(MIN_RETRY_TEMPERATURE, sampler.temperature), cooled), 3)


def trim_at_stop(text: str, stops: list[str]) -> str:
    """Cut the completion at the first stop sequence the backend echoed back."""
    cut = len(text)
    for stop in stops:
        index = text.find(stop)
        if index != -1:
            cut = min(cut, index)
    return text[:cut]


class HttpRoleRunner:
    """Async HTTP role runner for text-completion backends.

    Wire formats:
      "koboldcpp" : POST /api/v1/generate
                    {"prompt", "max_length", "temperature", "top_p", "stop_sequence"}
                    -> {"results": [{"text": "..."}]}
      "openai"    : POST /v1/completions
                    {"model", "prompt", "max_tokens", "temperature", "top_p", "stop"}
                    -> {"choices": [{"text": "..."}]}

    Every role gets its own sampler (see ``Settings.sampler_for``). Retries
    lower the temperature so a role that produced broken JSON is asked for
    a more conservative answer.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
        templates: dict[str, str] | None = None,
        samplers: dict[str, Sampler] | None = None,
    ) -> None:
        self.base_url = provider_url.rstrip("/")
        self.api_key = api_key
        self.provider_format = provider_format
        self.model = model
        self.timeout = timeout
        self.templates = dict(templates or {})
        self.samplers = dict(samplers or {})

    @classmethod
    def from_settings(cls, settings: Settings, templates: dict[str, str] | None = None) -> HttpRoleRunner:
        roles = ("director", "world", "character", "summarizer")
        return cls(
            provider_url=settings.llm_provider_url,
            api_key=settings.llm_api_key,
            provider_format=settings.llm_provider_format,
            model=settings.llm_model,
            timeout=settings.llm_timeout,
            templates=templates,
            samplers={role: settings.sampler_for(role) for role in roles},
        )

    def sampler(self, role: str) -> Sampler:
        return self.samplers.get(role) or Sampler()

    def request_for(self, role: str, context: RoleContext, prompt: str) -> tuple[str, dict[str, Any], list[str]]:
        """(url, body, stop sequences) for one role call."""
        sampler = self.sampler(role)
        stops = stop_sequences(role, context, sampler)
        temperature = retry_temperature(sampler, context.attempt)

        if self.provider_format == "openai":
            body: dict[str, Any] = {
                "prompt": prompt,
                "max_tokens": sampler.max_tokens,
                "temperature": temperature,
                "top_p": sampler.top_p,
            }
            if stops:
                body["stop"] = stops
            if self.model:
                body["model"] = self.model
            return f"{self.base_url}/v1/completions", body, stops

        body = {
            "prompt": prompt,
            "max_length": sampler.max_tokens,
            "temperature": temperature,
            "top_p": sampler.top_p,
            "stop_sequence": stops,
        }
        return f"{self.base_url}/api/v1/generate", body, stops

    def completion_text(self, role: str, data: Any) -> str:
        key = "choices" if self.provider_format == "openai" else "results"
        items = data.get(key) if isinstance(data, dict) else None
        first = items[0] if isinstance(items, list) and items else None
        if not isinstance(first, dict) or not isinstance(first.get("text"), str):
            raise RoleError(role, f"unexpected {self.provider_format} response: no {key}[0].text")
        return first["text"]

    async def __call__(self, role: str, context: RoleContext) -> str:
        prompt = render_role_prompt(context, self.templates)
        url, body, stops = self.request_for(role, context, prompt)
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        logger.debug(
            "%s call attempt=%d url=%s prompt_len=%d temperature=%s",
            role, context.attempt, url, len(prompt), body["temperature"],
        )

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException as e:
            raise RoleError(role, f"backend timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise RoleError(role, f"backend returned HTTP {e.response.status_code}") from e
        except httpx.ConnectError as e:
            raise RoleError(role, f"cannot connect to backend at {self.base_url}") from e
        except httpx.HTTPError as e:
            raise RoleError(role, f"request to {url} failed: {e}") from e
        except ValueError as e:
            raise RoleError(role, f"backend sent a body that is not JSON: {e}") from e

        text = trim_at_stop(self.completion_text(role, data), stops)
        logger.debug("%s response len=%d", role, len(text))
        return text
