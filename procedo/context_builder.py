"""
Organization context for the recommendation prompt.

Three sources are read for the caller's organization:

* institution rules, most authoritative first (``hierarchy_level`` ascending)
* historical procedural events, grouped by event type (precedents)
* historical procedural timelines, averaged per phase (benchmarks)

and folded into one of two system prompts: the default advisory prompt or the
parameterized compliance prompt that also carries the bundled institutional
parameters.
"""

import json
import math
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Tuple

from sqlmodel import Session, select

from .models import InstitutionRule, ProceduralEvent, ProceduralOrder, ProceduralTimeline, rule_payload

PARAMETERS_FILE = Path(__file__).parent / "data" / "procedo_parameters.json"

TOOL_NAME = "submit_analysis_report"
CASE_TEXT_LIMIT = 50000
DECISIONS_PER_TYPE = 3


class Precedent(NamedTuple):
    event: ProceduralEvent
    order: ProceduralOrder


@lru_cache()
def load_parameters() -> Dict[str, Any]:
    with PARAMETERS_FILE.open("r", encoding="utf-8") as f:
        return json.load(f)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def match_rules(session: Session, org_id: str) -> List[InstitutionRule]:
    return list(session.exec(
        select(InstitutionRule)
        .where(InstitutionRule.org_id == org_id)
        .order_by(InstitutionRule.hierarchy_level)
    ).all())


def find_precedents(session: Session, org_id: str, limit: int = 50) -> Dict[str, List[Precedent]]:
    """The org's most recent events grouped by event type, newest type first"""
    rows = session.exec(
        select(ProceduralEvent, ProceduralOrder)
        .join(ProceduralOrder, ProceduralEvent.procedural_order_id == ProceduralOrder.id)
        .where(ProceduralOrder.org_id == org_id)
        .order_by(ProceduralEvent.created_at.desc())
        .limit(limit)
    ).all()

    grouped: Dict[str, List[Precedent]] = {}
    for event, order in rows:
        grouped.setdefault(event.event_type, []).append(Precedent(event, order))
    return grouped


def find_timeline_benchmarks(session: Session, org_id: str, limit: int = 100) -> Dict[str, Dict[str, int]]:
    """Average allowed days per procedural phase over the org's most recent timelines"""
    timelines = session.exec(
        select(ProceduralTimeline)
        .join(ProceduralOrder, ProceduralTimeline.procedural_order_id == ProceduralOrder.id)
        .where(ProceduralOrder.org_id == org_id)
        .order_by(ProceduralTimeline.created_at.desc())
        .limit(limit)
    ).all()

    totals: Dict[str, Dict[str, int]] = {}
    for t in timelines:
        bucket = totals.setdefault(t.phase, {"total": 0, "count": 0})
        bucket["total"] += t.days
        bucket["count"] += 1

    return {
        phase: {"avg": round_half_up(b["total"] / b["count"]), "count": b["count"]}
        for phase, b in totals.items()
    }


def summarize_precedents(precedents: Dict[str, List[Precedent]], max_types: int) -> List[Dict[str, Any]]:
    return [
        {
            "type": event_type,
            "count": len(items),
            "decisions": [p.event.decision_value for p in items[:DECISIONS_PER_TYPE]],
        }
        for event_type, items in list(precedents.items())[:max_types]
    ]


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


VALIDATION_BLOCK = f"""CRITICAL: OUTPUT FORMAT REQUIREMENTS
- You must use the "{TOOL_NAME}" tool to submit your findings.
- Do not output plain text or markdown. Use the tool.

DOCUMENT VALIDATION:
1. If the document is not a valid arbitration/legal document, submit ONLY:
{{
  "error": "invalid_document",
  "message": "This does not appear to be a valid case document. Please upload an arbitration-related document."
}}

2. NON-ICSID WARNING:
If the document is an arbitration document but NOT related to ICSID (International Centre for
Settlement of Investment Disputes) or investment treaty arbitration (e.g. UNCITRAL investment
cases), submit ONLY:
{{
  "warning": "non_icsid_document",
  "message": "This document appears to be from a non-ICSID proceeding. Compliance checks are calibrated specifically for ICSID rules and may not apply here."
}}"""

OUTPUT_BLOCK = f"""OUTPUT SCHEMA:
The output structure is defined by the "{TOOL_NAME}" tool. Use this tool to return your analysis."""


def _user_message(case_text: str, text_limit: int) -> str:
    return f"CASE DOCUMENT:\n\n{case_text[:text_limit]}"


def build_recommendation_prompt(
    case_text: str,
    rules: List[InstitutionRule],
    precedents: Dict[str, List[Precedent]],
    timelines: Dict[str, Dict[str, int]],
    text_limit: int = CASE_TEXT_LIMIT,
) -> Tuple[str, str]:
    """Return (system prompt, user message) for the default analysis"""
    system_prompt = f"""You are Procedo, an expert ICSID procedural advisor. Your role is to analyze case documents and
provide ACTIONABLE PROCEDURAL RECOMMENDATIONS that arbitrators and parties can immediately use.

{VALIDATION_BLOCK}

YOUR CORE MISSION:
Provide CLEAR, ACTIONABLE recommendations that help:
1. Arbitrators make procedural decisions efficiently
2. Parties understand procedural requirements
3. Ensure ICSID Convention compliance
4. Optimize time and cost

APPLICABLE RULES:
{_dump([rule_payload(r) for r in rules[:10]])}

HISTORICAL PRECEDENTS:
{_dump(summarize_precedents(precedents, 5))}

TIMELINE BENCHMARKS:
{_dump(timelines)}

{OUTPUT_BLOCK}
"""
    return system_prompt, _user_message(case_text, text_limit)


def build_parameterized_prompt(
    case_text: str,
    rules: List[InstitutionRule],
    precedents: Dict[str, List[Precedent]],
    timelines: Dict[str, Dict[str, int]],
    text_limit: int = CASE_TEXT_LIMIT,
) -> Tuple[str, str]:
    """Return (system prompt, user message) for the compliance-scored analysis"""
    params = load_parameters()
    system_prompt = f"""You are an expert ICSID procedural advisor with access to Procedo's institutional parameters.
Analyze the case document against these specific compliance requirements.

{VALIDATION_BLOCK}

ANALYSIS FRAMEWORK:
You must analyze using TWO distinct categories of provisions:

=== MANDATORY PROVISIONS (Compliance Check Only) ===
For these provisions you may ONLY monitor, flag and verify compliance. Do not suggest alternatives.
{_dump(params["mandatory_provisions"])}

=== OPTIMIZABLE PROVISIONS (Improvements Allowed) ===
For these provisions you may actively suggest optimizations and improvements.
{_dump(params["optimizable_provisions"])}

APPLICABLE INSTITUTIONAL RULES (ALL):
{_dump([rule_payload(r) for r in rules])}

HISTORICAL PRECEDENTS:
{_dump(summarize_precedents(precedents, 10))}

TIMELINE BENCHMARKS:
{_dump(timelines)}

COMPLIANCE SCORING:
Score the document using these levels:
{_dump(params["compliance_scoring"])}

{OUTPUT_BLOCK}
"""
    return system_prompt, _user_message(case_text, text_limit)
