import asyncio
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from . import __version__
from .analysis import manager, run_case_analysis
from .config import Settings, get_settings
from .context_builder import find_precedents, find_timeline_benchmarks, match_rules, summarize_precedents
from .database import get_engine
from .history import HistoryIngestor, calculate_sha256, list_orders
from .models import (
    ANALYSIS_MODES,
    CASE_PENDING,
    CASE_PROCESSING,
    Case,
    CaseDetailResponse,
    CaseStatusResponse,
    CaseSummaryResponse,
    InstitutionRule,
    ProceduralOrderResponse,
    RuleIn,
    RuleResponse,
    case_status,
    load_json,
)
from .recommendation_engine import RecommendationGenerator, iter_text
from .text_extraction import TextExtractionError, count_pages, extract_clean_text


class OrgContext(BaseModel):
    org_id: str
    user_id: str


# Dependencies
def get_org_context(
    x_org_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> OrgContext:
    """Caller identity as forwarded by the auth gateway"""
    if not x_org_id or not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return OrgContext(org_id=x_org_id, user_id=x_user_id)


def get_session(engine: Engine = Depends(get_engine)):
    with Session(engine) as session:
        yield session


def get_generator(settings: Settings = Depends(get_settings)) -> RecommendationGenerator:
    return RecommendationGenerator(settings)


def get_ingestor(settings: Settings = Depends(get_settings)) -> HistoryIngestor:
    return HistoryIngestor(settings)


# Helper functions
def safe_filename(name: str) -> str:
    stem = re.sub(r"[^A-Za-z0-9._-]", "_", Path(name).name)
    return stem or "upload.pdf"


def check_mode(analysis_mode: str) -> str:
    if analysis_mode not in ANALYSIS_MODES:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown analysis mode '{analysis_mode}'. Use one of: {', '.join(ANALYSIS_MODES)}",
        )
    return analysis_mode


async def read_pdf_upload(file: UploadFile, max_mb: int) -> bytes:
    if not file.filename or not file.filename.lower().endswith(".pdf"):
        raise HTTPException(status_code=400, detail="Only PDF files are supported")

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="No file provided")
    if len(content) > max_mb * 1024 * 1024:
        raise HTTPException(status_code=400, detail=f"File too large. Max size is {max_mb}MB")
    return content


def extract_or_400(data: bytes) -> str:
    try:
        return extract_clean_text(data)
    except TextExtractionError as e:
        print(f"[Extractor] {e}")
        raise HTTPException(status_code=400, detail="Could not extract text from PDF")


def get_org_case(session: Session, case_id: str, org_id: str) -> Case:
    case = session.get(Case, case_id)
    if case is None or case.org_id != org_id:
        raise HTTPException(status_code=404, detail="Case not found")
    return case


# Initialize FastAPI app
app = FastAPI(title="Procedo", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Case analysis routes
@app.post("/api/cases", response_model=Dict[str, Any])
async def create_case(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    case_title: str = Form(""),
    analysis_mode: str = Form("default"),
    org: OrgContext = Depends(get_org_context),
    settings: Settings = Depends(get_settings),
    engine: Engine = Depends(get_engine),
    generator: RecommendationGenerator = Depends(get_generator),
):
    """Upload a case document and start its analysis in the background"""
    print(f"\n{'='*80}")
    print("CASE UPLOAD - Starting upload process")
    print(f"Filename: {file.filename}")
    print(f"Org ID  : {org.org_id}")
    print(f"Mode    : {analysis_mode}")
    print(f"{'='*80}")

    check_mode(analysis_mode)
    content = await read_pdf_upload(file, settings.max_case_file_mb)
    text = extract_or_400(content)

    case = Case(
        org_id=org.org_id,
        user_id=org.user_id,
        case_title=case_title.strip() or Path(file.filename).stem,
        file_name=file.filename,
        file_size=len(content),
        file_path="",
        sha256=calculate_sha256(content),
        page_count=count_pages(content),
        status=CASE_PENDING,
        analysis_mode=analysis_mode,
        analysis_progress=10,
        current_step="Text extracted",
    )

    upload_dir = Path(settings.uploads_dir) / org.org_id
    upload_dir.mkdir(parents=True, exist_ok=True)
    file_path = upload_dir / f"{case.id}_{safe_filename(file.filename)}"
    file_path.write_bytes(content)
    case.file_path = str(file_path)

    with Session(engine) as session:
        session.add(case)
        session.commit()
        case_id = case.id

    print(f"Case created with ID: {case_id}")

    background_tasks.add_task(run_case_analysis, engine, generator, case_id, text, org.org_id, analysis_mode)

    return {
        "status": "processing",
        "case_id": case_id,
        "message": "Document uploaded successfully. Analysis will begin shortly.",
    }


@app.post("/api/cases/{case_id}/analyze", response_model=Dict[str, Any])
async def reanalyze_case(
    case_id: str,
    background_tasks: BackgroundTasks,
    analysis_mode: str = Form("default"),
    org: OrgContext = Depends(get_org_context),
    engine: Engine = Depends(get_engine),
    generator: RecommendationGenerator = Depends(get_generator),
):
    """Run (or re-run) the analysis of a stored case in the given mode"""
    check_mode(analysis_mode)

    with Session(engine) as session:
        case = get_org_case(session, case_id, org.org_id)
        if case.status in (CASE_PENDING, CASE_PROCESSING):
            raise HTTPException(status_code=409, detail="Analysis already in progress")

        stored = Path(case.file_path)
        if not stored.exists():
            raise HTTPException(status_code=404, detail="Stored case document not found")
        text = extract_or_400(stored.read_bytes())

        case.status = CASE_PENDING
        case.analysis_mode = analysis_mode
        case.analysis_progress = 10
        case.current_step = "Text extracted"
        case.error_message = None
        session.add(case)
        session.commit()

    background_tasks.add_task(run_case_analysis, engine, generator, case_id, text, org.org_id, analysis_mode)

    return {"status": "processing", "case_id": case_id, "analysis_mode": analysis_mode}


@app.get("/api/cases", response_model=List[CaseSummaryResponse])
async def get_cases(
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_session),
):
    """All cases of the caller's organization, newest first"""
    try:
        cases = session.exec(
            select(Case).where(Case.org_id == org.org_id).order_by(Case.created_at.desc())
        ).all()
        return [CaseSummaryResponse(
            id=c.id,
            case_title=c.case_title,
            file_name=c.file_name,
            status=c.status,
            analysis_progress=c.analysis_progress,
            created_at=c.created_at,
            has_default=c.default_recommendations is not None,
            has_parameterized=c.parameterized_recommendations is not None,
        ) for c in cases]
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/cases/{case_id}", response_model=CaseDetailResponse)
async def get_case(
    case_id: str,
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_session),
):
    case = get_org_case(session, case_id, org.org_id)
    return CaseDetailResponse(
        **case_status(case).model_dump(),
        case_title=case.case_title,
        file_name=case.file_name,
        file_size=case.file_size,
        page_count=case.page_count,
        analysis_mode=case.analysis_mode,
        created_at=case.created_at,
    )


@app.get("/api/cases/{case_id}/status", response_model=CaseStatusResponse)
async def get_case_status(
    case_id: str,
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_session),
):
    """Polled by the client while the background analysis runs"""
    try:
        return case_status(get_org_case(session, case_id, org.org_id))
    except HTTPException:
        raise
    except Exception as e:
        print(f"Status check error: {e}")
        raise HTTPException(status_code=500, detail="Failed to get status")


@app.delete("/api/cases/{case_id}")
async def delete_case(
    case_id: str,
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_session),
):
    case = get_org_case(session, case_id, org.org_id)
    if case.status == CASE_PROCESSING:
        raise HTTPException(status_code=409, detail="Analysis already in progress")

    stored = Path(case.file_path)
    if stored.exists():
        stored.unlink()

    session.delete(case)
    session.commit()
    return {"status": "success", "message": "Case deleted successfully"}


@app.post("/api/analyze-case")
async def analyze_case_stream(
    file: UploadFile = File(...),
    analysis_mode: str = Form("default"),
    org: OrgContext = Depends(get_org_context),
    settings: Settings = Depends(get_settings),
    session: Session = Depends(get_session),
    generator: RecommendationGenerator = Depends(get_generator),
):
    """Analyze without persisting; streams the structured report as it is generated"""
    check_mode(analysis_mode)
    content = await read_pdf_upload(file, settings.max_case_file_mb)
    text = extract_or_400(content)

    try:
        stream = await asyncio.to_thread(generator.generate, session, org.org_id, text, analysis_mode)
    except Exception as e:
        print(f"Error analyzing case: {e}")
        raise HTTPException(status_code=500, detail=f"Analysis failed: {e}")

    return StreamingResponse(
        iter_text(stream),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# Historical order routes
@app.post("/api/history", response_model=Dict[str, Any])
async def ingest_history(
    file: UploadFile = File(...),
    org: OrgContext = Depends(get_org_context),
    settings: Settings = Depends(get_settings),
    session: Session = Depends(get_session),
    ingestor: HistoryIngestor = Depends(get_ingestor),
):
    """Add a historical procedural order to the organization's precedent store"""
    if not file.filename or not file.filename.lower().endswith(".pdf"):
        raise HTTPException(status_code=400, detail="Only PDF files are supported")

    content = await file.read()
    result = await asyncio.to_thread(
        ingestor.ingest,
        session,
        org.org_id,
        file.filename,
        content,
        upload_dir=Path(settings.uploads_dir) / org.org_id / "history",
    )
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result["error"])
    return result


@app.get("/api/history", response_model=List[ProceduralOrderResponse])
async def get_history(
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_session),
):
    try:
        return [ProceduralOrderResponse(**o) for o in list_orders(session, org.org_id)]
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/history/benchmarks")
async def get_benchmarks(
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_session),
):
    """The precedent summary and timeline benchmarks that prompts are built from"""
    return {
        "precedents": summarize_precedents(find_precedents(session, org.org_id), 10),
        "timeline_benchmarks": find_timeline_benchmarks(session, org.org_id),
    }


# Institution rule routes
@app.post("/api/rules")
async def upsert_rules(
    rules: List[RuleIn],
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_session),
):
    """Create or update rules keyed on (institution, version, ref)"""
    created = updated = 0
    for rule_in in rules:
        values = rule_in.model_dump()
        values["extra_data"] = json.dumps(values["extra_data"]) if values["extra_data"] is not None else None

        existing = session.exec(
            select(InstitutionRule).where(
                InstitutionRule.org_id == org.org_id,
                InstitutionRule.institution == rule_in.institution,
                InstitutionRule.version == rule_in.version,
                InstitutionRule.ref == rule_in.ref,
            )
        ).first()

        if existing:
            for key, value in values.items():
                setattr(existing, key, value)
            session.add(existing)
            updated += 1
        else:
            session.add(InstitutionRule(org_id=org.org_id, **values))
            created += 1

    session.commit()
    return {"created": created, "updated": updated}


@app.get("/api/rules", response_model=List[RuleResponse])
async def get_rules(
    org: OrgContext = Depends(get_org_context),
    session: Session = Depends(get_session),
):
    return [
        RuleResponse(
            id=r.id,
            institution=r.institution,
            version=r.version,
            document_type=r.document_type,
            ref=r.ref,
            title=r.title,
            summary=r.summary,
            mandatory=r.mandatory,
            parameter_tag=r.parameter_tag,
            extra_data=load_json(r.extra_data),
            non_derogable=r.non_derogable,
            annulment_linked=r.annulment_linked,
            hierarchy_level=r.hierarchy_level,
            ai_usage=r.ai_usage,
        )
        for r in match_rules(session, org.org_id)
    ]


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8001)
