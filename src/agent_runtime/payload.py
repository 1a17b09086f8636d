"""Builds the JSON body of a Responses API request from a Prompt."""

from typing import Any

from agent_runtime.schemas.prompt import (
    CustomToolSpec,
    FunctionToolSpec,
    ModelFamily,
    Prompt,
    Reasoning,
    ReasoningEffort,
    TextControls,
    TextFormat,
    ToolSpec,
    Verbosity,
)

OUTPUT_SCHEMA_FORMAT_NAME = "codex_output_schema"


def full_instructions(prompt: Prompt, family: ModelFamily) -> str:
    """Base instructions (or the prompt's override) followed by user instructions."""
    base = prompt.base_instructions_override or family.base_instructions
    if prompt.user_instructions:
        return "\n".join(part for part in (base, prompt.user_instructions) if part)
    return base


def formatted_input(prompt: Prompt) -> list[dict[str, Any]]:
    """Shallow copies of the prompt's input items."""
    return [dict(item) for item in prompt.input]


def tool_to_json(spec: ToolSpec) -> dict[str, Any]:
    """Flatten one tool into the shape the Responses API expects."""
    if isinstance(spec, FunctionToolSpec):
        function = spec.function
        return {
            "type": "function",
            "name": function.name,
            "description": function.description,
            "strict": function.strict,
            "parameters": function.parameters,
        }
    if isinstance(spec, CustomToolSpec):
        # Free-form tools are offered as functions taking one string argument.
        return {
            "type": "function",
            "name": spec.custom.name,
            "description": spec.custom.description,
            "strict": False,
            "parameters": {
                "type": "object",
                "properties": {"input": {"type": "string"}},
                "required": ["input"],
            },
        }
    return {"type": spec.type}


def tools_to_responses_json(tools: list[ToolSpec]) -> list[dict[str, Any]]:
    return [tool_to_json(spec) for spec in tools]


def build_reasoning(
    family: ModelFamily,
    effort: ReasoningEffort | None,
    summary: str | None,
) -> Reasoning | None:
    """Reasoning controls, only for families that support summaries."""
    if not family.supports_reasoning_summaries:
        return None
    return Reasoning(effort=effort, summary=summary)


def build_text_controls(
    verbosity: Verbosity | None,
    output_schema: dict[str, Any] | None,
) -> TextControls | None:
    if verbosity is None and output_schema is None:
        return None
    text_format = None
    if output_schema is not None:
        text_format = TextFormat(json_schema=output_schema, name=OUTPUT_SCHEMA_FORMAT_NAME)
    return TextControls(verbosity=verbosity, format=text_format)


def build_payload(
    prompt: Prompt,
    model: str,
    family: ModelFamily,
    conversation_id: str,
    store: bool,
    effort: ReasoningEffort | None = None,
    summary: str | None = None,
    verbosity: Verbosity | None = None,
) -> dict[str, Any]:
    """Assemble the full request body."""
    reasoning = build_reasoning(family, effort, summary)
    payload: dict[str, Any] = {
        "model": model,
        "instructions": full_instructions(prompt, family),
        "input": formatted_input(prompt),
        "tools": tools_to_responses_json(prompt.tools),
        "tool_choice": "auto",
        "parallel_tool_calls": False,
        "store": store,
        "stream": True,
        "include": ["reasoning.encrypted_content"] if reasoning is not None else [],
        "prompt_cache_key": conversation_id,
    }
    if reasoning is not None:
        payload["reasoning"] = reasoning.model_dump(mode="json", exclude_none=True)
    text = build_text_controls(verbosity, prompt.output_schema)
    if text is not None:
        payload["text"] = text.model_dump(mode="json", by_alias=True, exclude_none=True)
    return payload
