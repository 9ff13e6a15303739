import time
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Tuple

import openai
from sqlmodel import Session

from .config import Settings
from .context_builder import (
    TOOL_NAME,
    build_parameterized_prompt,
    build_recommendation_prompt,
    find_precedents,
    find_timeline_benchmarks,
    match_rules,
)
from .models import ANALYSIS_MODES


def _str(description: Optional[str] = None, enum: Optional[list] = None) -> Dict[str, Any]:
    prop: Dict[str, Any] = {"type": "string"}
    if enum:
        prop["enum"] = enum
    if description:
        prop["description"] = description
    return prop


def _obj(**properties: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "object", "properties": properties}


def _list_of(**properties: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "array", "items": _obj(**properties)}


_NUMBER = {"type": "number"}
_BOOL = {"type": "boolean"}

_FLAG_ITEM = dict(
    issue=_str(), severity=_str(), rule_ref=_str(), annulment_risk=_BOOL, immediate_action=_str(),
)

ANALYSIS_TOOL_PARAMETERS: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "case_summary": _str("Brief 2-3 sentence summary of the case"),
        "document_type": _str("Procedural Order | Memorial | Submission | Award | Other"),
        "warning": _str("Warning code if applicable", enum=["non_icsid_document"]),
        "error": _str("Error code if applicable", enum=["invalid_document"]),
        "message": _str("Error or warning message"),
        "procedo_recommends": _obj(
            primary_recommendations=_list_of(
                title=_str(),
                recommendation=_str(),
                rationale=_str(),
                priority=_str(enum=["high", "medium", "low"]),
                rule_reference=_str(),
            ),
            procedural_checklist=_list_of(
                item=_str(), status=_str(), deadline_guidance=_str(),
            ),
        ),
        "recommendations": _obj(
            language=_obj(recommendation=_str(), reasoning=_str(), rule_ref=_str(), confidence=_str()),
            timeline=_obj(
                phases=_list_of(name=_str(), suggested_days=_NUMBER, reasoning=_str(), benchmark=_str()),
                rule_ref=_str(),
            ),
            bifurcation=_obj(
                recommendation=_str(), reasoning=_str(), historical_context=_str(),
                rule_ref=_str(), discretionary=_BOOL,
            ),
            hearing_format=_obj(recommendation=_str(), reasoning=_str(), rule_ref=_str()),
            efficiency_suggestions=_list_of(
                type=_str(), suggestion=_str(), rationale=_str(),
                potential_impact=_str(), estimated_savings=_str(),
            ),
            mandatory_flags=_list_of(**_FLAG_ITEM),
        ),
        # parameterized analysis only
        "compliance_score": _obj(overall=_str(), score_percentage=_NUMBER, summary=_str()),
        "mandatory_compliance": _list_of(
            provision_ref=_str(), provision_name=_str(), status=_str(), finding=_str(),
            action_required=_str(), annulment_risk=_BOOL,
        ),
        "optimization_opportunities": _list_of(
            provision_ref=_str(), provision_name=_str(), current_approach=_str(),
            suggested_optimization=_str(), potential_impact=_str(), estimated_savings=_str(), ai_role=_str(),
        ),
        "critical_flags": _list_of(**_FLAG_ITEM),
    },
    "required": ["case_summary", "document_type"],
}

ANALYSIS_TOOL = {
    "type": "function",
    "function": {
        "name": TOOL_NAME,
        "description": "Submit the final procedural analysis report for the case document.",
        "parameters": ANALYSIS_TOOL_PARAMETERS,
    },
}

ANALYSIS_TOOL_CHOICE = {"type": "function", "function": {"name": TOOL_NAME}}


def iter_text(stream: Iterable[Any]) -> Iterator[str]:
    """
    Yield the text carried by a streamed chat completion.

    Tool-call argument fragments are the structured report; plain content
    deltas only show up when the model ignored the forced tool.
    """
    for chunk in stream:
        if not chunk.choices:
            continue
        delta = chunk.choices[0].delta
        if delta is None:
            continue
        for call in delta.tool_calls or []:
            if call.function is not None and call.function.arguments:
                yield call.function.arguments
        if delta.content:
            yield delta.content


def collect_stream(stream: Iterable[Any], on_progress: Optional[Callable[[int], None]] = None) -> str:
    """Accumulate a streamed reply into one string, reporting its length as it grows"""
    parts = []
    received = 0
    for piece in iter_text(stream):
        parts.append(piece)
        received += len(piece)
        if on_progress is not None:
            on_progress(received)
    return "".join(parts)


class RecommendationGenerator:
    """Builds the org-specific prompt and opens the streamed tool call"""

    def __init__(self, settings: Settings, client: Optional[Any] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = openai.OpenAI(api_key=self.settings.openai_api_key)
        return self._client

    def build_prompt(self, session: Session, org_id: str, text: str, mode: str = "default") -> Tuple[str, str]:
        if mode not in ANALYSIS_MODES:
            raise ValueError(f"Unknown analysis mode: {mode}")

        rules = match_rules(session, org_id)
        precedents = find_precedents(session, org_id)
        timelines = find_timeline_benchmarks(session, org_id)
        print(f"[Context] org {org_id}: {len(rules)} rules, {len(precedents)} precedent types, "
              f"{len(timelines)} timeline benchmarks")

        builder = build_parameterized_prompt if mode == "with_parameters" else build_recommendation_prompt
        return builder(text, rules, precedents, timelines, text_limit=self.settings.case_text_limit)

    def generate(self, session: Session, org_id: str, text: str, mode: str = "default"):
        """Return the streaming completion for *text*; iterate it with collect_stream or iter_text"""
        system_prompt, user_message = self.build_prompt(session, org_id, text, mode)
        return self.open_stream(system_prompt, user_message, mode)

    def open_stream(self, system_prompt: str, user_message: str, mode: str = "default"):
        print("AI ANALYSIS REQUEST:")
        print(f"Model: {self.settings.analysis_model}")
        print(f"Mode: {mode}")
        print(f"System prompt: {len(system_prompt)} chars, case text: {len(user_message)} chars")
        start_time = time.time()

        stream = self.client.chat.completions.create(
            model=self.settings.analysis_model,
            max_tokens=self.settings.analysis_max_tokens,
            temperature=0,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            tools=[ANALYSIS_TOOL],
            tool_choice=ANALYSIS_TOOL_CHOICE,
            stream=True,
        )
        print(f"Stream opened in {time.time() - start_time:.2f} seconds")
        return stream
