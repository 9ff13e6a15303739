import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import WebSocket
from sqlalchemy.engine import Engine
from sqlmodel import Session

from .json_repair import parse_model_json
from .models import CASE_ANALYZED, CASE_ERROR, CASE_PROCESSING, Case
from .recommendation_engine import RecommendationGenerator, collect_stream

STREAM_START = 40
STREAM_END = 90
CHARS_PER_POINT = 400
STREAM_STEP = "Generating recommendations"

INVALID_DOCUMENT_MESSAGE = (
    "This does not appear to be a valid case document. Please upload an arbitration-related document."
)


# WebSocket manager
class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: dict):
        for connection in list(self.active_connections):
            try:
                await connection.send_text(json.dumps(message, default=str))
            except Exception as e:
                print(f"[WS] dropping connection – {e}")
                self.disconnect(connection)


manager = ConnectionManager()


def update_case(engine: Engine, case_id: str, **fields: Any) -> None:
    with Session(engine) as session:
        case = session.get(Case, case_id)
        if case is None:
            print(f"[Analysis] case {case_id} disappeared, skipping update {sorted(fields)}")
            return
        for key, value in fields.items():
            setattr(case, key, value)
        session.add(case)
        session.commit()


async def report_progress(engine: Engine, case_id: str, progress: int, step: str) -> None:
    update_case(engine, case_id, status=CASE_PROCESSING, analysis_progress=progress, current_step=step)
    await manager.broadcast({
        "type": "progress",
        "case_id": case_id,
        "progress": progress,
        "current_step": step,
    })


class StreamProgress:
    """
    Moves the case from STREAM_START towards STREAM_END as the reply grows.

    Called from the worker thread that drains the stream; when *loop* is
    given, each advance is also broadcast on that event loop.
    """

    def __init__(self, engine: Engine, case_id: str, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.engine = engine
        self.case_id = case_id
        self.loop = loop
        self.progress = STREAM_START

    def __call__(self, received_chars: int) -> None:
        progress = min(STREAM_END, STREAM_START + received_chars // CHARS_PER_POINT)
        if progress <= self.progress:
            return
        self.progress = progress
        update_case(self.engine, self.case_id, analysis_progress=progress)

        if self.loop is not None:
            message = {
                "type": "progress",
                "case_id": self.case_id,
                "progress": progress,
                "current_step": STREAM_STEP,
            }
            # wait so websocket listeners see the steps in order
            asyncio.run_coroutine_threadsafe(manager.broadcast(message), self.loop).result()


def result_fields(result: Dict[str, Any], mode: str) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    payload = json.dumps(result, ensure_ascii=False)
    if mode == "with_parameters":
        return {"parameterized_recommendations": payload, "parameterized_analyzed_at": now}
    return {"default_recommendations": payload, "analyzed_at": now}


async def run_case_analysis(
    engine: Engine,
    generator: RecommendationGenerator,
    case_id: str,
    text: str,
    org_id: str,
    mode: str = "default",
) -> None:
    """
    Background analysis job for one case.

    Progress and the final outcome are written to the case row (polled by
    the status endpoint) and broadcast to websocket listeners. Failures are
    recorded on the case, never raised.
    """
    print("\n" + "=" * 80)
    print("RUN_CASE_ANALYSIS – Starting analysis")
    print(f"Case ID : {case_id}")
    print(f"Org ID  : {org_id}")
    print(f"Mode    : {mode}")
    print(f"Text    : {len(text)} chars")
    print("=" * 80)

    start_time = time.time()

    try:
        await report_progress(engine, case_id, 15, "Loading organization context")
        with Session(engine) as session:
            system_prompt, user_message = generator.build_prompt(session, org_id, text, mode)

        await report_progress(engine, case_id, 30, "Requesting recommendations")
        stream = await asyncio.to_thread(generator.open_stream, system_prompt, user_message, mode)

        await report_progress(engine, case_id, STREAM_START, STREAM_STEP)
        progress = StreamProgress(engine, case_id, loop=asyncio.get_running_loop())
        raw = await asyncio.to_thread(collect_stream, stream, progress)
        print(f"[Analysis] received {len(raw)} chars from model")

        await report_progress(engine, case_id, 95, "Saving results")
        result = parse_model_json(raw)

        if result.get("error") == "invalid_document":
            message = result.get("message") or INVALID_DOCUMENT_MESSAGE
            update_case(
                engine, case_id,
                status=CASE_ERROR, error_message=message,
                analysis_progress=100, current_step="Invalid document",
            )
            await manager.broadcast({"type": "error", "case_id": case_id, "detail": message})
            print(f"[Analysis] case {case_id} rejected as invalid document")
            return

        if result.get("warning"):
            print(f"[Analysis] case {case_id} warning: {result['warning']}")

        update_case(
            engine, case_id,
            status=CASE_ANALYZED, error_message=None,
            analysis_progress=100, current_step="Complete",
            **result_fields(result, mode),
        )

        total_time = time.time() - start_time
        print("\n" + "=" * 80)
        print("ANALYSIS COMPLETE")
        print(f"Total time : {total_time:.2f} s")
        print("=" * 80)

        await manager.broadcast({
            "type": "progress",
            "case_id": case_id,
            "progress": 100,
            "current_step": "Complete",
        })

    except Exception as ex:
        print(f"ERROR: Analysis of case {case_id} failed – {ex}")
        update_case(engine, case_id, status=CASE_ERROR, error_message=str(ex), current_step="Failed")
        await manager.broadcast({
            "type": "error",
            "case_id": case_id,
            "detail": f"Analysis failed: {ex}",
        })
