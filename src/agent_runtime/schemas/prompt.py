"""Prompt, tool and model description types used to build a request.

Input items are kept as plain dicts: they are provider JSON (messages,
reasoning blocks, function_call / function_call_output pairs) that is sent
back verbatim, so this layer does not re-model them.
"""

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ReasoningEffort(StrEnum):
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Verbosity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Tools (internal tagged representation)
# ---------------------------------------------------------------------------


class FunctionDefinition(BaseModel):
    """A JSON-schema described function the model may call."""

    name: str
    description: str
    strict: bool = False
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class FreeformDefinition(BaseModel):
    """A tool whose input is a single free-form string."""

    name: str
    description: str
    format: dict[str, Any] | None = None


class FunctionToolSpec(BaseModel):
    type: Literal["function"] = "function"
    function: FunctionDefinition


class LocalShellToolSpec(BaseModel):
    type: Literal["local_shell"] = "local_shell"


class WebSearchToolSpec(BaseModel):
    type: Literal["web_search"] = "web_search"


class CustomToolSpec(BaseModel):
    type: Literal["custom"] = "custom"
    custom: FreeformDefinition


ToolSpec = Annotated[
    FunctionToolSpec | LocalShellToolSpec | WebSearchToolSpec | CustomToolSpec,
    Field(discriminator="type"),
]


def tool_name(spec: ToolSpec) -> str:
    """Name the model uses when calling this tool."""
    if isinstance(spec, FunctionToolSpec):
        return spec.function.name
    if isinstance(spec, CustomToolSpec):
        return spec.custom.name
    return spec.type


def function_tool(
    name: str,
    description: str,
    parameters: dict[str, Any] | None = None,
    strict: bool = False,
) -> FunctionToolSpec:
    """Shorthand for the most common tool kind."""
    definition = FunctionDefinition(name=name, description=description, strict=strict)
    if parameters is not None:
        definition.parameters = parameters
    return FunctionToolSpec(function=definition)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


class Prompt(BaseModel):
    """Everything the client needs to issue one Responses request."""

    input: list[dict[str, Any]] = Field(default_factory=list)
    tools: list[ToolSpec] = Field(default_factory=list)
    base_instructions_override: str | None = None
    user_instructions: str | None = None
    output_schema: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Request controls
# ---------------------------------------------------------------------------


class Reasoning(BaseModel):
    effort: ReasoningEffort | None = None
    summary: str | None = None


class TextFormat(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["json_schema"] = "json_schema"
    strict: bool = True
    # "schema" would shadow a BaseModel attribute, so it is aliased.
    json_schema: dict[str, Any] = Field(alias="schema")
    name: str


class TextControls(BaseModel):
    verbosity: Verbosity | None = None
    format: TextFormat | None = None


# ---------------------------------------------------------------------------
# Model and provider descriptions
# ---------------------------------------------------------------------------


class ModelFamily(BaseModel):
    """Static facts about a model family that shape the request."""

    family: str
    base_instructions: str = ""
    supports_reasoning_summaries: bool = False
    needs_special_apply_patch_instructions: bool = False


class ProviderInfo(BaseModel):
    """Where and how to reach the model provider."""

    name: str = "openai"
    base_url: str = "https://api.openai.com/v1"
    requires_auth: bool = True
    request_max_retries: int | None = None
    stream_idle_timeout_ms: int | None = None
    # Client-side pacing. Declaring either one enables the request limiter.
    requests_per_minute: int | None = Field(default=None, gt=0)
    requests_per_hour: int | None = Field(default=None, gt=0)
    http_headers: dict[str, str] = Field(default_factory=dict)

    @property
    def is_azure(self) -> bool:
        return "azure" in self.base_url
