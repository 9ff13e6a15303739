import hashlib
import json
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import openai
from sqlmodel import Session, select

from .config import Settings
from .json_repair import parse_model_json
from .models import ProceduralEvent, ProceduralOrder, ProceduralTimeline
from .text_extraction import count_pages, extract_clean_text

EXTRACTION_PROMPT = """
You are an expert legal assistant specializing in International Arbitration procedural orders.
Your task is to extract structured data from a Procedural Order (PO) text.

Output strictly valid JSON obeying the following schema mapping:

{
  "order_meta": {
    "number": "string (e.g., 'Procedural Order No. 1')",
    "date": "YYYY-MM-DD",
    "rules_context": ["string (e.g., 'ICSID Arbitration Rules 2022')"]
  },
  "events": [
    {
      "type": "string (e.g., 'Bifurcation', 'Security for Costs', 'Document Production')",
      "decision": "string (e.g., 'Granted', 'Denied', 'Deferred', 'Rules Established')",
      "discretionary": boolean,
      "rule_ref": "string (e.g., 'Rule 42(1)')"
    }
  ],
  "timelines": [
    {
      "phase": "string (e.g., 'Memorial on the Merits')",
      "party": "string (e.g., 'Claimant', 'Respondent', 'Tribunal')",
      "days": number (total days allowed or relative offset),
      "relative_to": "string (e.g., 'First Session', 'Counter-Memorial')"
    }
  ]
}

If you cannot find specific data, omit the field or use null. Do not hallucinate.
"""


def calculate_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def parse_order_date(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip()[:10], "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def rules_context_list(value: Any) -> List[str]:
    """The model sometimes sends a bare string or nulls instead of a list of strings"""
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str) and item.strip()]
    return []


def order_number(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)) or not str(value).strip():
        return "Unknown Order"
    return str(value).strip()


def timeline_days(value: Any) -> int:
    # bool is an int subclass; "true" is not a duration
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    return 0


class HistoryIngestor:
    """Turns a historical procedural order into events and timelines for the precedent store"""

    def __init__(self, settings: Settings, client: Optional[Any] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = openai.OpenAI(api_key=self.settings.openai_api_key)
        return self._client

    def extract_structure(self, text: str) -> Dict[str, Any]:
        """Ask the model for the order's metadata, decisions and deadlines"""
        print("AI HISTORY EXTRACTION REQUEST:")
        print(f"Model: {self.settings.history_model}")
        print(f"Text: {len(text)} chars (limit {self.settings.history_text_limit})")
        start_time = time.time()

        response = self.client.chat.completions.create(
            model=self.settings.history_model,
            max_tokens=self.settings.history_max_tokens,
            temperature=0,
            messages=[
                {"role": "system", "content": EXTRACTION_PROMPT},
                {
                    "role": "user",
                    "content": (
                        "Here is the text of a Procedural Order. Extract the data as JSON:\n\n"
                        f"{text[:self.settings.history_text_limit]}"
                    ),
                },
            ],
        )

        content = response.choices[0].message.content
        if not content:
            raise ValueError("Unexpected response from model")

        print(f"Processing time: {time.time() - start_time:.2f} seconds")
        return parse_model_json(content)

    def store(
        self,
        session: Session,
        org_id: str,
        structured: Dict[str, Any],
        source_pdf_path: Optional[str] = None,
        sha256: Optional[str] = None,
    ) -> ProceduralOrder:
        meta = structured.get("order_meta")
        if not isinstance(meta, dict):
            meta = {}

        order = ProceduralOrder(
            org_id=org_id,
            institution="ICSID",
            case_type="Arbitration",
            procedural_order_number=order_number(meta.get("number")),
            order_date=parse_order_date(meta.get("date")),
            rules_context=json.dumps(rules_context_list(meta.get("rules_context"))),
            source_pdf_path=source_pdf_path,
            sha256=sha256,
            extracted_json=json.dumps(structured, ensure_ascii=False),
        )
        session.add(order)

        for e in structured.get("events") or []:
            if not isinstance(e, dict) or not e.get("type"):
                print(f"[History] skipping event without type: {e}")
                continue
            session.add(ProceduralEvent(
                procedural_order_id=order.id,
                event_type=e["type"],
                decision_value=e.get("decision"),
                discretionary=bool(e.get("discretionary") or False),
                source_rule_ref=e.get("rule_ref"),
                extra_data=json.dumps({"raw": e}, ensure_ascii=False),
            ))

        for t in structured.get("timelines") or []:
            if not isinstance(t, dict) or not t.get("phase"):
                print(f"[History] skipping timeline without phase: {t}")
                continue
            session.add(ProceduralTimeline(
                procedural_order_id=order.id,
                phase=t["phase"],
                party=t.get("party"),
                days=timeline_days(t.get("days")),
                relative_to=t.get("relative_to"),
            ))

        session.commit()
        session.refresh(order)
        return order

    def ingest(
        self,
        session: Session,
        org_id: str,
        file_name: str,
        data: Optional[bytes],
        upload_dir: Optional[Path] = None,
    ) -> Dict[str, Any]:
        """
        Ingest one historical order PDF.

        Returns ``{"success": True, "order_number", "order_id"}`` or
        ``{"success": False, "error"}``; a file already ingested for the org is
        reported with ``"duplicate": True`` and not stored twice.
        """
        print(f"\n{'='*80}")
        print("HISTORY INGEST - Starting")
        print(f"Filename: {file_name}")
        print(f"Org ID  : {org_id}")
        print(f"{'='*80}")

        dest: Optional[Path] = None
        try:
            if not data:
                raise ValueError("No file provided")

            max_bytes = self.settings.max_history_file_bytes
            if len(data) > max_bytes:
                raise ValueError(f"File too large. Max size is {self.settings.max_history_file_mb}MB")

            file_hash = calculate_sha256(data)
            existing = session.exec(
                select(ProceduralOrder).where(
                    ProceduralOrder.org_id == org_id,
                    ProceduralOrder.sha256 == file_hash,
                )
            ).first()
            if existing:
                print(f"Duplicate order detected: {existing.id}")
                return {
                    "success": True,
                    "duplicate": True,
                    "order_number": existing.procedural_order_number,
                    "order_id": existing.id,
                }

            text = extract_clean_text(data)
            print(f"Pages: {count_pages(data)}")

            structured = self.extract_structure(text)

            if upload_dir is not None:
                upload_dir.mkdir(parents=True, exist_ok=True)
                dest = upload_dir / f"{file_hash[:12]}_{Path(file_name).name}"
                dest.write_bytes(data)

            order = self.store(
                session, org_id, structured,
                source_pdf_path=str(dest) if dest is not None else None,
                sha256=file_hash,
            )

            print(f"Stored {order.procedural_order_number} as {order.id}")
            return {"success": True, "order_number": order.procedural_order_number, "order_id": order.id}

        except Exception as e:
            session.rollback()
            if dest is not None and dest.exists():
                dest.unlink()
            print(f"Error processing PO: {e}")
            return {"success": False, "error": str(e)}


def list_orders(session: Session, org_id: str) -> List[Dict[str, Any]]:
    orders = session.exec(
        select(ProceduralOrder)
        .where(ProceduralOrder.org_id == org_id)
        .order_by(ProceduralOrder.created_at.desc())
    ).all()

    results = []
    for order in orders:
        events = session.exec(
            select(ProceduralEvent).where(ProceduralEvent.procedural_order_id == order.id)
        ).all()
        timelines = session.exec(
            select(ProceduralTimeline).where(ProceduralTimeline.procedural_order_id == order.id)
        ).all()
        results.append({
            "id": order.id,
            "institution": order.institution,
            "procedural_order_number": order.procedural_order_number,
            "rules_context": json.loads(order.rules_context or "[]"),
            "order_date": order.order_date,
            "created_at": order.created_at,
            "event_count": len(events),
            "timeline_count": len(timelines),
        })
    return results
