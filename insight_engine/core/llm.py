"""Chat model construction and JSON reply parsing."""

import json
import re
from typing import Any, TypeVar

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

from insight_engine.core.config import Settings

T = TypeVar("T", bound=BaseModel)

_FENCE = re.compile(r"```(?:json)?\s*(.*?)(?:```|$)", re.DOTALL)


def get_llm(
    settings: Settings,
    model: str | None = None,
    temperature: float | None = None,
    json_mode: bool = True,
) -> ChatOpenAI:
    """
    Get configured LLM instance for JSON chat calls.

    Args:
        settings: Application settings (API key, default chat model, timeouts)
        model: Model name override (defaults to CHAT_MODEL)
        temperature: Sampling temperature; None keeps the model default
        json_mode: Ask the API for a JSON object response

    Returns:
        ChatOpenAI instance
    """
    model_kwargs: dict[str, Any] = {}
    if json_mode:
        model_kwargs["response_format"] = {"type": "json_object"}

    return ChatOpenAI(
        api_key=settings.OPENAI_API_KEY,
        model=model or settings.CHAT_MODEL,
        temperature=temperature,
        timeout=settings.OPENAI_TIMEOUT_SECONDS,
        max_retries=settings.OPENAI_MAX_RETRIES,
        model_kwargs=model_kwargs,
    )


def extract_json_text(raw_output: str) -> str:
    """
    Pull the JSON document out of a chat reply.

    JSON mode usually returns a bare object, but replies can still arrive
    inside a code fence (closed or not) or after a line of prose.
    """
    text = raw_output.strip()

    fenced = _FENCE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    if text[:1] not in ("{", "[") and "{" in text and "}" in text:
        text = text[text.index("{") : text.rindex("}") + 1]
    return text


def parse_llm_json(raw_output: str, model: type[T]) -> T:
    """
    Parse a chat reply and validate it against `model`.

    Raises:
        json.JSONDecodeError: If no JSON document can be recovered
        pydantic.ValidationError: If the document doesn't match the schema
    """
    return model.model_validate(json.loads(extract_json_text(raw_output)))


def _reply_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    # Content blocks: keep only the text parts
    return "".join(part.get("text", "") for part in content or [] if isinstance(part, dict))


def invoke_json(llm: Any, system_prompt: str, user_prompt: str, model: type[T]) -> T:
    """
    Run one system + user exchange and parse the reply into `model`.

    An empty reply validates as `{}`, so models with defaults come back empty.
    """
    response = llm.invoke([SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)])
    return parse_llm_json(_reply_text(response.content) or "{}", model)
