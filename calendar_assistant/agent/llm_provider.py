from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Type, TypeVar

from openai import OpenAIError
from pydantic import BaseModel, ValidationError

from ..config import OPENAI_REASONING_EFFORT
from ..llm import get_async_client
from ..utils import _log_debug

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_OPEN_RE = re.compile(r"^```[\w-]*\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```$")


@dataclass
class CompletionOutcome:
  """What came back from one JSON-mode call; parsed is None on any failure."""
  parsed: Optional[BaseModel]
  raw_output: str = ""
  llm_available: bool = True
  error: Optional[str] = None
  meta: Dict[str, Any] = field(default_factory=dict)


def _json_candidates(raw_output: str) -> Iterator[str]:
  text = raw_output.strip()
  yield text
  unfenced = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", text)).strip()
  yield unfenced
  left, right = unfenced.find("{"), unfenced.rfind("}")
  if 0 <= left < right:
    yield unfenced[left:right + 1]


def validate_structured_response(response_model: Type[ModelT],
                                 raw_output: str) -> Optional[ModelT]:
  """Try the raw text, the fence-stripped text, then the outermost {...}."""
  if not raw_output:
    return None
  tried = set()
  for candidate in _json_candidates(raw_output):
    if not candidate or candidate in tried:
      continue
    tried.add(candidate)
    try:
      return response_model.model_validate_json(candidate)
    except ValidationError:
      continue
  return None


def _instruction(system_prompt: str) -> str:
  # JSON mode rejects prompts that never mention json.
  if "json" in system_prompt.lower():
    return system_prompt
  return f"{system_prompt}\n\nRespond with a single JSON object."


async def run_structured_completion(
    *,
    model: str,
    system_prompt: str,
    user_payload: Dict[str, Any],
    response_model: Type[ModelT],
    max_completion_tokens: int,
    reasoning_effort: Optional[str] = None,
) -> CompletionOutcome:
  effort = reasoning_effort or OPENAI_REASONING_EFFORT
  meta = {"model": model, "reasoning_effort": effort}
  try:
    client = get_async_client()
  except RuntimeError as exc:
    return CompletionOutcome(None, llm_available=False, error=str(exc),
                             meta=meta)

  try:
    completion = await client.chat.completions.create(
        model=model,
        messages=[
            {"role": "system", "content": _instruction(system_prompt)},
            {"role": "user",
             "content": json.dumps(user_payload, ensure_ascii=False)},
        ],
        response_format={"type": "json_object"},
        reasoning_effort=effort,
        max_completion_tokens=max_completion_tokens,
    )
  except OpenAIError as exc:
    logger.warning("LLM call failed model=%s: %s", model, exc)
    return CompletionOutcome(None, error=str(exc), meta=meta)

  raw_output = (completion.choices[0].message.content or "").strip()
  _log_debug(f"[LLM] model={model} effort={effort} raw={raw_output or '(empty)'}")
  parsed = validate_structured_response(response_model, raw_output)
  if parsed is None:
    return CompletionOutcome(None, raw_output, error="unparseable output",
                             meta=meta)
  return CompletionOutcome(parsed, raw_output, meta=meta)
