import json
from typing import Any, Dict


class JSONRepairError(ValueError):
    """The model output could not be turned into a JSON object"""


def strip_code_fences(text: str) -> str:
    t = text.strip()
    if t.lower().startswith("```json"):
        t = t[7:]
    if t.startswith("```"):
        t = t[3:]
    if t.endswith("```"):
        t = t[:-3]
    return t.strip()


def parse_model_json(raw: str) -> Dict[str, Any]:
    """
    Best-effort parse of a model reply into a JSON object.

    Tries the fence-stripped text first, then the span between the first
    "{" and the last "}" to drop any prose the model wrapped around it.
    """
    if not raw or not raw.strip():
        raise JSONRepairError("Empty response from model")

    cleaned = strip_code_fences(raw)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end <= start:
            raise JSONRepairError("No JSON object found in model response")
        try:
            parsed = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            raise JSONRepairError(f"Could not parse model response as JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise JSONRepairError("Model response is not a JSON object")
    return parsed
