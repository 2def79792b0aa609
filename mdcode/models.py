"""Model clients: one adapter per vendor behind a uniform complete() contract.

Every adapter turns the transcript into the OpenAI-style chat format, sends it
through LiteLLM with the vendor's routing prefix, and turns the reply back into
either FinalText or ToolCalls.
"""

import json
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Mapping, Sequence

from .report import (
    AuthError,
    ConfigError,
    MalformedResponse,
    RateLimited,
    RequestRejected,
    TransportError,
)
from .transcript import ASSISTANT, TOOL_RESULT, USER, ToolCallRequest, Turn

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_TOKENS = 4096
DEFAULT_TIMEOUT = 120.0
EMPTY_TOOL_OUTPUT = "(no output)"
EMPTY_ANSWER = "(no answer)"


@dataclass(frozen=True)
class FinalText:
    text: str


@dataclass(frozen=True)
class ToolCalls:
    calls: tuple[ToolCallRequest, ...]


ModelResponse = FinalText | ToolCalls


@dataclass(frozen=True)
class Vendor:
    name: str
    prefix: str
    key_env: str
    model_env: str
    default_model: str


VENDORS: dict[str, Vendor] = {
    "claude": Vendor(
        "claude", "anthropic", "ANTHROPIC_API_KEY", "ANTHROPIC_MODEL_NAME",
        "claude-3-7-sonnet-20250219",
    ),
    "openai": Vendor(
        "openai", "openai", "OPENAI_API_KEY", "OPENAI_MODEL_NAME", "gpt-4.1"
    ),
    "google": Vendor(
        "google", "gemini", "GOOGLE_API_KEY", "GOOGLE_MODEL_NAME",
        "gemini-2.5-pro-preview-03-25",
    ),
    "deepseek": Vendor(
        "deepseek", "deepseek", "DEEPSEEK_API_KEY", "DEEPSEEK_MODEL_NAME",
        "deepseek-chat",
    ),
}


def _vendor(name: str) -> Vendor:
    try:
        return VENDORS[name.lower()]
    except KeyError:
        raise ConfigError(
            f"unknown provider {name!r}; choose one of: {', '.join(VENDORS)}"
        ) from None


@dataclass(frozen=True)
class ModelConfig:
    """Everything a client needs, resolved once at session start."""

    vendor: str
    api_key: str
    model: str
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    temperature: float | None = None
    timeout: float = DEFAULT_TIMEOUT
    base_url: str | None = None

    def __repr__(self) -> str:
        return (
            f"ModelConfig(vendor={self.vendor!r}, model={self.model!r}, api_key=***)"
        )

    @classmethod
    def from_env(
        cls,
        vendor: str,
        *,
        model: str | None = None,
        api_key: str | None = None,
        environ: Mapping[str, str] | None = None,
        **overrides,
    ) -> "ModelConfig":
        """Look up the vendor's credential and model name.

        An explicit api_key wins over the environment. Raises AuthError when
        neither yields a non-blank key.
        """
        info = _vendor(vendor)
        env = os.environ if environ is None else environ
        key = api_key or env.get(info.key_env, "")
        if not key.strip():
            raise AuthError(f"please set the {info.key_env} environment variable")
        model_name = model or env.get(info.model_env) or info.default_model
        return cls(vendor=info.name, api_key=key.strip(), model=model_name, **overrides)


class ModelClient:
    """Sends a transcript plus tool schemas to a model and returns a ModelResponse."""

    name = "model"

    def complete(
        self,
        turns: Sequence[Turn],
        tool_schemas: list[dict],
        *,
        system_prompt: str | None = None,
    ) -> ModelResponse:
        raise NotImplementedError


class LiteLLMClient(ModelClient):
    vendor = ""

    def __init__(self, config: ModelConfig):
        if not config.api_key or not config.api_key.strip():
            raise AuthError(f"{self.name}: no API key configured")
        self.config = config

    @property
    def model_string(self) -> str:
        prefix = VENDORS[self.vendor].prefix
        model = self.config.model
        if model.startswith(prefix + "/"):
            return model
        return f"{prefix}/{model}"

    # -- Outbound --------------------------------------------------------------

    def tool_result_content(self, text: str) -> str:
        return text or EMPTY_TOOL_OUTPUT

    def build_messages(
        self, turns: Sequence[Turn], system_prompt: str | None = None
    ) -> list[dict]:
        """Serialize turns to the chat-completions message list."""
        messages: list[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        for turn in turns:
            if turn.role == USER:
                messages.append({"role": "user", "content": turn.text})
            elif turn.role == ASSISTANT:
                calls = turn.tool_calls
                if not calls:
                    messages.append({"role": "assistant", "content": turn.text or EMPTY_ANSWER})
                    continue
                messages.append(
                    {
                        "role": "assistant",
                        "content": turn.text or None,
                        "tool_calls": [
                            {
                                "id": c.call_id,
                                "type": "function",
                                "function": {
                                    "name": c.tool_name,
                                    "arguments": c.arguments
                                    if isinstance(c.arguments, str)
                                    else json.dumps(c.arguments),
                                },
                            }
                            for c in calls
                        ],
                    }
                )
            elif turn.role == TOOL_RESULT:
                for result in turn.results:
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": result.call_id,
                            "content": self.tool_result_content(result.as_text()),
                        }
                    )
        return messages

    # -- Inbound ---------------------------------------------------------------

    def new_call_id(self) -> str:
        return f"{self.vendor}_call_{uuid.uuid4().hex[:12]}"

    def parse_response(self, response, used_ids: frozenset[str] = frozenset()) -> ModelResponse:
        try:
            message = response.choices[0].message
        except (AttributeError, IndexError, KeyError, TypeError) as exc:
            raise MalformedResponse(f"{self.name}: reply has no message: {exc}") from exc
        if message is None:
            raise MalformedResponse(f"{self.name}: reply has no message")

        content = getattr(message, "content", None)
        if content is not None and not isinstance(content, str):
            raise MalformedResponse(
                f"{self.name}: unexpected content type {type(content).__name__}"
            )

        raw_calls = getattr(message, "tool_calls", None) or []
        if not raw_calls:
            return FinalText(content or "")

        if content:
            logger.debug("%s: dropping text sent alongside tool calls: %r", self.name, content)

        seen = set(used_ids)
        calls = []
        for tc in raw_calls:
            function = getattr(tc, "function", None)
            name = getattr(function, "name", None)
            if not name:
                raise MalformedResponse(f"{self.name}: tool call without a function name")
            raw_args = getattr(function, "arguments", None)
            if raw_args is None or raw_args == "":
                arguments = {}
            elif isinstance(raw_args, str):
                try:
                    arguments = json.loads(raw_args)
                except json.JSONDecodeError:
                    # Left as text; dispatch reports it as invalid arguments.
                    arguments = raw_args
            else:
                arguments = raw_args
            call_id = getattr(tc, "id", None)
            if not call_id or call_id in seen:
                call_id = self.new_call_id()
            seen.add(call_id)
            calls.append(ToolCallRequest(call_id=call_id, tool_name=name, arguments=arguments))
        return ToolCalls(tuple(calls))

    def completion_kwargs(self, messages: list[dict], tool_schemas: list[dict]) -> dict:
        kwargs = dict(
            model=self.model_string,
            messages=messages,
            max_tokens=self.config.max_output_tokens,
            api_key=self.config.api_key,
            timeout=self.config.timeout,
        )
        if tool_schemas:
            kwargs["tools"] = tool_schemas
            kwargs["tool_choice"] = "auto"
        if self.config.temperature is not None:
            kwargs["temperature"] = self.config.temperature
        if self.config.base_url:
            kwargs["api_base"] = self.config.base_url
        return kwargs

    def complete(self, turns, tool_schemas, *, system_prompt=None) -> ModelResponse:
        import litellm

        litellm.suppress_debug_info = True

        messages = self.build_messages(turns, system_prompt)
        kwargs = self.completion_kwargs(messages, tool_schemas)
        logger.debug(
            "calling %s with %d messages and %d tools",
            kwargs["model"],
            len(messages),
            len(tool_schemas),
        )

        try:
            response = litellm.completion(**kwargs)
        except litellm.AuthenticationError as e:
            raise AuthError(f"{self.name}: credential rejected: {e}") from e
        except litellm.RateLimitError as e:
            raise RateLimited(f"{self.name}: rate limited: {e}") from e
        except (litellm.Timeout, litellm.APIConnectionError) as e:
            raise TransportError(f"{self.name}: connection failed: {e}") from e
        except (
            litellm.BadRequestError,
            litellm.NotFoundError,
            litellm.PermissionDeniedError,
            litellm.UnprocessableEntityError,
        ) as e:
            raise RequestRejected(f"{self.name}: request rejected: {e}") from e
        except Exception as e:
            raise TransportError(f"{self.name}: request failed: {e}") from e

        used = frozenset(c.call_id for t in turns for c in t.tool_calls)
        return self.parse_response(response, used)


class ClaudeClient(LiteLLMClient):
    name = "Claude"
    vendor = "claude"


class OpenAIClient(LiteLLMClient):
    name = "OpenAI"
    vendor = "openai"


class GoogleClient(LiteLLMClient):
    name = "Google"
    vendor = "google"

    def new_call_id(self) -> str:
        # Gemini function calls carry no id of their own.
        return f"google_function_{uuid.uuid4().hex[:12]}"


class DeepSeekClient(LiteLLMClient):
    name = "DeepSeek"
    vendor = "deepseek"


CLIENTS: dict[str, type[LiteLLMClient]] = {
    "claude": ClaudeClient,
    "openai": OpenAIClient,
    "google": GoogleClient,
    "deepseek": DeepSeekClient,
}


def create_client(
    vendor: str, config: ModelConfig | None = None, **from_env_kwargs
) -> LiteLLMClient:
    """Build the adapter for `vendor`, resolving its config from the environment if needed."""
    info = _vendor(vendor)
    if config is None:
        config = ModelConfig.from_env(info.name, **from_env_kwargs)
    elif config.vendor != info.name:
        raise ConfigError(f"config is for {config.vendor!r}, not {info.name!r}")
    return CLIENTS[info.name](config)
