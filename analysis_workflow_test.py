"""
Upload -> background analysis -> status polling workflow for case documents.
"""

import json
import os
import time

from sqlmodel import Session

from conftest import (
    ANALYSIS_RESULT,
    ORG_HEADERS,
    OTHER_ORG_HEADERS,
    PARAMETERIZED_RESULT,
    FakeOpenAI,
    build_pdf,
    content_stream,
    tool_stream,
)
from procedo.analysis import STREAM_END, STREAM_START, StreamProgress, manager
from procedo.models import Case


def upload(client, pdf, headers=ORG_HEADERS, **form):
    return client.post(
        "/api/cases",
        files={"file": ("order.pdf", pdf, "application/pdf")},
        data=form,
        headers=headers,
    )


class TestCaseUpload:
    def test_health_check(self, make_client):
        response = make_client().get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_upload_runs_analysis_and_stores_recommendations(self, make_client, case_pdf):
        fake = FakeOpenAI(tool_stream(ANALYSIS_RESULT))
        client = make_client(analysis_client=fake)

        response = upload(client, case_pdf, case_title="Mining Co. v. Republic")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processing"

        status = client.get(f"/api/cases/{body['case_id']}/status", headers=ORG_HEADERS).json()
        assert status["status"] == "analyzed"
        assert status["analysis_progress"] == 100
        assert status["current_step"] == "Complete"
        assert status["default_recommendations"] == ANALYSIS_RESULT
        assert status["parameterized_recommendations"] is None
        assert status["analyzed_at"] is not None
        assert status["error_message"] is None

    def test_model_request_forces_the_report_tool(self, make_client, case_pdf):
        fake = FakeOpenAI(tool_stream(ANALYSIS_RESULT))
        upload(make_client(analysis_client=fake), case_pdf)

        call = fake.completions.calls[0]
        assert call["stream"] is True
        assert call["tool_choice"] == {"type": "function", "function": {"name": "submit_analysis_report"}}
        assert call["tools"][0]["function"]["name"] == "submit_analysis_report"
        assert call["messages"][1]["content"].startswith("CASE DOCUMENT:")
        assert "Procedural Order No. 1" in call["messages"][1]["content"]

    def test_case_detail_has_file_metadata(self, make_client, case_pdf):
        client = make_client(analysis_client=FakeOpenAI(tool_stream(ANALYSIS_RESULT)))
        case_id = upload(client, case_pdf, case_title="Mining Co. v. Republic").json()["case_id"]

        detail = client.get(f"/api/cases/{case_id}", headers=ORG_HEADERS).json()
        assert detail["case_title"] == "Mining Co. v. Republic"
        assert detail["file_name"] == "order.pdf"
        assert detail["file_size"] == len(case_pdf)
        assert detail["page_count"] == 1
        assert detail["analysis_mode"] == "default"

    def test_case_title_defaults_to_file_stem(self, make_client, case_pdf):
        client = make_client(analysis_client=FakeOpenAI(tool_stream(ANALYSIS_RESULT)))
        case_id = upload(client, case_pdf).json()["case_id"]
        assert client.get(f"/api/cases/{case_id}", headers=ORG_HEADERS).json()["case_title"] == "order"

    def test_prose_wrapped_reply_is_repaired(self, make_client, case_pdf):
        raw = "Here is the report:\n" + json.dumps(ANALYSIS_RESULT) + "\nLet me know if you need more."
        client = make_client(analysis_client=FakeOpenAI(content_stream(raw)))
        case_id = upload(client, case_pdf).json()["case_id"]

        status = client.get(f"/api/cases/{case_id}/status", headers=ORG_HEADERS).json()
        assert status["status"] == "analyzed"
        assert status["default_recommendations"]["case_summary"] == ANALYSIS_RESULT["case_summary"]

    def test_non_icsid_warning_is_kept_as_result(self, make_client, case_pdf):
        warning = {
            "case_summary": "Commercial arbitration.",
            "document_type": "Other",
            "warning": "non_icsid_document",
            "message": "This document appears to be from a non-ICSID proceeding.",
        }
        client = make_client(analysis_client=FakeOpenAI(tool_stream(warning)))
        case_id = upload(client, case_pdf).json()["case_id"]

        status = client.get(f"/api/cases/{case_id}/status", headers=ORG_HEADERS).json()
        assert status["status"] == "analyzed"
        assert status["default_recommendations"]["warning"] == "non_icsid_document"


class TestAnalysisFailures:
    def test_invalid_document_marks_case_as_error(self, make_client, case_pdf):
        reply = {"error": "invalid_document", "message": "Not a case document."}
        client = make_client(analysis_client=FakeOpenAI(tool_stream(reply)))
        case_id = upload(client, case_pdf).json()["case_id"]

        status = client.get(f"/api/cases/{case_id}/status", headers=ORG_HEADERS).json()
        assert status["status"] == "error"
        assert status["error_message"] == "Not a case document."
        assert status["default_recommendations"] is None

    def test_unparseable_reply_marks_case_as_error(self, make_client, case_pdf):
        client = make_client(analysis_client=FakeOpenAI(tool_stream('{"case_summary": "cut off')))
        case_id = upload(client, case_pdf).json()["case_id"]

        status = client.get(f"/api/cases/{case_id}/status", headers=ORG_HEADERS).json()
        assert status["status"] == "error"
        assert status["error_message"]
        assert status["current_step"] == "Failed"

    def test_model_exception_is_stored_on_case(self, make_client, case_pdf):
        class ExplodingCompletions:
            def create(self, **kwargs):
                raise RuntimeError("rate limited")

        class ExplodingClient:
            chat = type("Chat", (), {"completions": ExplodingCompletions()})()

        client = make_client(analysis_client=ExplodingClient())
        case_id = upload(client, case_pdf).json()["case_id"]

        status = client.get(f"/api/cases/{case_id}/status", headers=ORG_HEADERS).json()
        assert status["status"] == "error"
        assert status["error_message"] == "rate limited"


class TestUploadValidation:
    def test_missing_org_is_unauthorized(self, make_client, case_pdf):
        response = upload(make_client(), case_pdf, headers={})
        assert response.status_code == 401

    def test_rejects_non_pdf(self, make_client):
        response = make_client().post(
            "/api/cases",
            files={"file": ("notes.txt", b"hello", "text/plain")},
            headers=ORG_HEADERS,
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Only PDF files are supported"

    def test_rejects_oversized_file(self, make_client, settings):
        settings.max_case_file_mb = 1
        big = b"%PDF-1.4\n" + b"0" * (1024 * 1024 + 1)
        response = upload(make_client(), big)
        assert response.status_code == 400
        assert response.json()["detail"] == "File too large. Max size is 1MB"

    def test_rejects_pdf_without_text(self, make_client):
        response = upload(make_client(), build_pdf([]))
        assert response.status_code == 400
        assert response.json()["detail"] == "Could not extract text from PDF"

    def test_rejects_unknown_mode(self, make_client, case_pdf):
        response = upload(make_client(), case_pdf, analysis_mode="aggressive")
        assert response.status_code == 400


class TestCaseAccess:
    def test_other_org_cannot_see_case(self, make_client, case_pdf):
        client = make_client(analysis_client=FakeOpenAI(tool_stream(ANALYSIS_RESULT)))
        case_id = upload(client, case_pdf).json()["case_id"]

        assert client.get(f"/api/cases/{case_id}/status", headers=OTHER_ORG_HEADERS).status_code == 404
        assert client.get(f"/api/cases/{case_id}", headers=OTHER_ORG_HEADERS).status_code == 404
        assert client.get("/api/cases", headers=OTHER_ORG_HEADERS).json() == []

    def test_unknown_case_is_404(self, make_client):
        response = make_client().get("/api/cases/does-not-exist/status", headers=ORG_HEADERS)
        assert response.status_code == 404
        assert response.json()["detail"] == "Case not found"

    def test_list_cases_newest_first(self, make_client, case_pdf):
        client = make_client(analysis_client=FakeOpenAI(tool_stream(ANALYSIS_RESULT)))
        first = upload(client, case_pdf, case_title="First").json()["case_id"]
        second = upload(client, case_pdf, case_title="Second").json()["case_id"]

        cases = client.get("/api/cases", headers=ORG_HEADERS).json()
        assert [c["id"] for c in cases] == [second, first]
        assert cases[0]["has_default"] is True
        assert cases[0]["has_parameterized"] is False

    def test_delete_case_removes_row_and_file(self, make_client, case_pdf, engine):
        client = make_client(analysis_client=FakeOpenAI(tool_stream(ANALYSIS_RESULT)))
        case_id = upload(client, case_pdf).json()["case_id"]
        with Session(engine) as session:
            stored_path = session.get(Case, case_id).file_path

        response = client.delete(f"/api/cases/{case_id}", headers=ORG_HEADERS)
        assert response.status_code == 200
        assert client.get(f"/api/cases/{case_id}", headers=ORG_HEADERS).status_code == 404
        assert not os.path.exists(stored_path)


class TestReanalysis:
    def test_parameterized_run_keeps_default_result(self, make_client, case_pdf):
        fake = FakeOpenAI(tool_stream(ANALYSIS_RESULT), tool_stream(PARAMETERIZED_RESULT))
        client = make_client(analysis_client=fake)
        case_id = upload(client, case_pdf).json()["case_id"]

        response = client.post(
            f"/api/cases/{case_id}/analyze",
            data={"analysis_mode": "with_parameters"},
            headers=ORG_HEADERS,
        )
        assert response.status_code == 200

        status = client.get(f"/api/cases/{case_id}/status", headers=ORG_HEADERS).json()
        assert status["status"] == "analyzed"
        assert status["default_recommendations"] == ANALYSIS_RESULT
        assert status["parameterized_recommendations"] == PARAMETERIZED_RESULT
        assert status["parameterized_analyzed_at"] is not None

        system_prompt = fake.completions.calls[1]["messages"][0]["content"]
        assert "MANDATORY PROVISIONS" in system_prompt
        assert "COMPLIANCE SCORING" in system_prompt

    def test_reanalysis_refused_while_running(self, make_client, case_pdf, engine):
        client = make_client(analysis_client=FakeOpenAI(tool_stream(ANALYSIS_RESULT)))
        case_id = upload(client, case_pdf).json()["case_id"]
        with Session(engine) as session:
            case = session.get(Case, case_id)
            case.status = "processing"
            session.add(case)
            session.commit()

        response = client.post(f"/api/cases/{case_id}/analyze", headers=ORG_HEADERS)
        assert response.status_code == 409


class TestStreamingAnalysis:
    def test_streams_report_fragments(self, make_client, case_pdf):
        client = make_client(analysis_client=FakeOpenAI(tool_stream(ANALYSIS_RESULT)))
        response = client.post(
            "/api/analyze-case",
            files={"file": ("order.pdf", case_pdf, "application/pdf")},
            headers=ORG_HEADERS,
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert json.loads(response.text) == ANALYSIS_RESULT

    def test_model_call_runs_off_the_event_loop(self, make_client, case_pdf):
        fake = FakeOpenAI(tool_stream(ANALYSIS_RESULT))
        make_client(analysis_client=fake).post(
            "/api/analyze-case",
            files={"file": ("order.pdf", case_pdf, "application/pdf")},
            headers=ORG_HEADERS,
        )
        assert fake.completions.on_event_loop == [False]


class TestStreamProgress:
    def test_progress_advances_with_received_text(self, engine):
        with Session(engine) as session:
            case = Case(org_id="o", user_id="u", case_title="t", file_name="f.pdf",
                        file_size=1, file_path="", sha256="x")
            session.add(case)
            session.commit()
            case_id = case.id

        progress = StreamProgress(engine, case_id)
        progress(4000)
        with Session(engine) as session:
            assert session.get(Case, case_id).analysis_progress == STREAM_START + 10

        progress(10 ** 6)
        progress(10)
        with Session(engine) as session:
            assert session.get(Case, case_id).analysis_progress == STREAM_END


def wait_for_listener(timeout=5.0):
    deadline = time.time() + timeout
    while not manager.active_connections and time.time() < deadline:
        time.sleep(0.01)


class TestProgressBroadcast:
    def test_websocket_receives_every_progress_step(self, make_client, case_pdf):
        report = dict(ANALYSIS_RESULT, case_summary="The Tribunal " * 400)
        client = make_client(analysis_client=FakeOpenAI(tool_stream(report, size=200)))

        with client.websocket_connect("/ws") as ws:
            wait_for_listener()
            case_id = upload(client, case_pdf).json()["case_id"]

            steps = []
            while not steps or steps[-1] != 100:
                message = ws.receive_json()
                assert message["type"] == "progress"
                assert message["case_id"] == case_id
                steps.append(message["progress"])

        assert steps[:3] == [15, 30, STREAM_START]
        assert steps[-2:] == [95, 100]
        streamed = steps[3:-2]
        assert len(streamed) >= 10
        assert streamed == sorted(set(streamed))
        assert all(STREAM_START < p <= STREAM_END for p in streamed)

        status = client.get(f"/api/cases/{case_id}/status", headers=ORG_HEADERS).json()
        assert status["status"] == "analyzed"
