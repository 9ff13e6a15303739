import asyncio
import json
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from procedo import text_extraction
from procedo.config import Settings, get_settings
from procedo.database import get_engine, init_engine
from procedo.history import HistoryIngestor
from procedo.recommendation_engine import RecommendationGenerator
from procedo.server import app, get_generator, get_ingestor

ORG_HEADERS = {"X-Org-Id": "org_alpha", "X-User-Id": "user_1"}
OTHER_ORG_HEADERS = {"X-Org-Id": "org_beta", "X-User-Id": "user_2"}


def build_pdf(lines):
    """Single-page PDF with one Helvetica text line per entry"""
    ops = ["BT", "/F1 12 Tf", "14 TL", "72 720 Td"]
    for i, line in enumerate(lines):
        escaped = line.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
        ops.append(f"({escaped}) Tj" if i == 0 else f"T* ({escaped}) Tj")
    ops.append("ET")
    stream = "\n".join(ops).encode("latin-1")

    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R "
        b"/Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, 1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"

    xref_pos = len(out)
    out += b"xref\n0 %d\n" % (len(objects) + 1)
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref_pos)
    return bytes(out)


def _tool_chunk(arguments):
    call = SimpleNamespace(index=0, function=SimpleNamespace(arguments=arguments))
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None, tool_calls=[call]))])


def _content_chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=None))])


def tool_stream(payload, size=25):
    """Streamed tool call whose arguments serialize *payload* (or a raw string)"""
    raw = payload if isinstance(payload, str) else json.dumps(payload)
    chunks = [SimpleNamespace(choices=[])]  # usage-only chunk
    chunks += [_tool_chunk(raw[i:i + size]) for i in range(0, len(raw), size)]
    return chunks


def content_stream(text, size=25):
    return [_content_chunk(text[i:i + size]) for i in range(0, len(text), size)]


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _on_event_loop():
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class FakeCompletions:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.on_event_loop = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        self.on_event_loop.append(_on_event_loop())
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class FakeOpenAI:
    """Replays canned chat completions and records every request"""

    def __init__(self, *responses):
        self.completions = FakeCompletions(responses)
        self.chat = SimpleNamespace(completions=self.completions)


ANALYSIS_RESULT = {
    "case_summary": "Investment treaty claim concerning a mining concession.",
    "document_type": "Procedural Order",
    "procedo_recommends": {
        "primary_recommendations": [
            {
                "title": "Fix the bifurcation timetable",
                "recommendation": "Decide the bifurcation request within 30 days.",
                "rationale": "Historical orders of the organization granted similar requests.",
                "priority": "high",
                "rule_reference": "Rule 44",
            }
        ],
        "procedural_checklist": [],
    },
    "recommendations": {
        "timeline": {
            "phases": [{"name": "Memorial", "suggested_days": 120, "reasoning": "Benchmark", "benchmark": "118"}],
            "rule_ref": "Rule 11",
        }
    },
}

PARAMETERIZED_RESULT = {
    "case_summary": "Investment treaty claim concerning a mining concession.",
    "document_type": "Procedural Order",
    "compliance_score": {"overall": "minor_issues", "score_percentage": 82, "summary": "Mostly compliant."},
    "mandatory_compliance": [
        {"provision_ref": "Rule 27", "provision_name": "First session", "status": "compliant",
         "finding": "Held on day 45.", "action_required": "", "annulment_risk": False}
    ],
}

ORDER_EXTRACTION = {
    "order_meta": {
        "number": "Procedural Order No. 1",
        "date": "2023-03-14",
        "rules_context": ["ICSID Arbitration Rules 2022"],
    },
    "events": [
        {"type": "Bifurcation", "decision": "Granted", "discretionary": True, "rule_ref": "Rule 44"},
        {"type": "Document Production", "decision": "Rules Established", "rule_ref": "Rule 37"},
        {"decision": "Missing type"},
    ],
    "timelines": [
        {"phase": "Memorial on the Merits", "party": "Claimant", "days": 120, "relative_to": "First Session"},
        {"phase": "Counter-Memorial", "party": "Respondent", "days": "ninety", "relative_to": "Memorial"},
    ],
}


@pytest.fixture(autouse=True)
def word_token_counter(monkeypatch):
    # tiktoken downloads its BPE tables on first use
    monkeypatch.setattr(text_extraction, "count_tokens", lambda text: len(text.split()))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        openai_api_key="test-key",
        database_url=f"sqlite:///{tmp_path / 'procedo_test.db'}",
        uploads_dir=str(tmp_path / "uploads"),
    )


@pytest.fixture
def engine(settings):
    return init_engine(settings.database_url)


@pytest.fixture
def case_pdf():
    return build_pdf([
        "INTERNATIONAL CENTRE FOR SETTLEMENT OF INVESTMENT DISPUTES",
        "Procedural Order No. 1",
        "The Tribunal fixes the schedule for the Memorial on the Merits.",
    ])


@pytest.fixture
def make_client(settings, engine):
    """TestClient factory wired to fake OpenAI clients"""
    clients = []

    def factory(analysis_client=None, history_client=None):
        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_engine] = lambda: engine
        app.dependency_overrides[get_generator] = lambda: RecommendationGenerator(settings, client=analysis_client)
        app.dependency_overrides[get_ingestor] = lambda: HistoryIngestor(settings, client=history_client)
        test_client = TestClient(app)
        clients.append(test_client)
        return test_client

    yield factory

    app.dependency_overrides.clear()
    for test_client in clients:
        test_client.close()
