"""Inbound request schema for chat turns."""

import math
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MIN_ITERATIONS = 1
MAX_ITERATIONS = 200
DEFAULT_ITERATIONS = 10


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )


class Credentials(_CamelModel):
    """Remote-data credentials bound to a session."""

    access_token: str
    refresh_token: str = ""


class ModelSelection(_CamelModel):
    """Locally selected provider/model pair."""

    provider_type: str = ""
    model_id: str = ""


class ProviderSettings(_CamelModel):
    """Provider connection settings supplied with the request."""

    api_key: str = ""
    base_url: str = ""


class ConversationTurn(_CamelModel):
    role: Literal["system", "user", "assistant"]
    content: str = ""


class ChatRequest(_CamelModel):
    """One conversational turn submitted by the host."""

    conversation: list[ConversationTurn] = Field(
        default_factory=list,
        validation_alias=AliasChoices("conversation", "messages"),
    )
    model_selection: ModelSelection | None = Field(
        default=None,
        validation_alias=AliasChoices("modelConfig", "model_selection"),
        serialization_alias="modelConfig",
    )
    provider_config: ProviderSettings | None = None
    system_prompt: str | None = None
    tools_enabled: bool = True
    max_iterations: int = DEFAULT_ITERATIONS
    infinite_mode: bool = False
    speed: Literal["slow", "normal", "fast"] = "normal"
    credentials: Credentials | None = None
    is_playbook_run: bool = False
    initial_user_prompt: str | None = None
    playbook_id: str | None = None

    @field_validator("max_iterations", mode="before")
    @classmethod
    def _clamp_iterations(cls, value: Any) -> int:
        try:
            number = float(value)
        except (TypeError, ValueError, OverflowError):
            return DEFAULT_ITERATIONS
        if math.isnan(number):
            return DEFAULT_ITERATIONS
        if math.isinf(number):
            return MAX_ITERATIONS if number > 0 else MIN_ITERATIONS
        return max(MIN_ITERATIONS, min(round(number), MAX_ITERATIONS))

    @field_validator("speed", mode="before")
    @classmethod
    def _normalize_speed(cls, value: Any) -> str:
        text = str(value or "normal").strip().lower()
        return text if text in {"slow", "normal", "fast"} else "normal"

    def last_user_message(self) -> str:
        for turn in reversed(self.conversation):
            if turn.role == "user":
                return turn.content
        return ""
