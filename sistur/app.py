from __future__ import annotations

import dataclasses
import logging
import os
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from sistur import services
from sistur.db import current_db_path, get_session, init_db
from sistur.errors import CalculationError
from sistur.models import Alert, Assessment, Destination
from sistur.schemas import AlertOut, AssessmentDetail, CalculateRequest, CalculationOut

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="SISTUR",
    version="0.1.0",
    description=(
        "Assessment scoring and prescription engine for tourism destinations. "
        "Normalizes indicator data, scores the RA, OE and AO pillars, detects issues, "
        "prescribes training and raises regression alerts. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Calculation", "description": "Run the scoring pipeline for an assessment."},
        {"name": "Assessments", "description": "Read calculated scores, issues and prescriptions."},
        {"name": "Alerts", "description": "Destination-level regression and systemic alerts."},
        {"name": "Admin", "description": "Operational endpoints."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = services.get_entity(session, model, entity_id)
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


@app.exception_handler(CalculationError)
async def calculation_error_handler(request: Request, exc: CalculationError):
    if exc.status_code >= 500:
        log.error("Calculation of assessment %s failed: %s", exc.assessment_id, exc)
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


# ---------------------------------------------------------------------------
# Routes: Calculation
# ---------------------------------------------------------------------------


@app.post("/api/calculate", response_model=CalculationOut,
          tags=["Calculation"], summary="Calculate scores, issues and prescriptions for an assessment")
def calculate(body: CalculateRequest, session: Session = Depends(db_session)):
    result = services.calculate(session, body.assessment_id)
    return dataclasses.asdict(result)


# ---------------------------------------------------------------------------
# Routes: Assessments
# ---------------------------------------------------------------------------


@app.get("/api/assessments/{assessment_id}", response_model=AssessmentDetail,
         tags=["Assessments"], summary="Get an assessment with its pillar scores, issues and prescriptions")
def get_assessment(assessment_id: int, session: Session = Depends(db_session)):
    assessment = _get_or_404(session, Assessment, assessment_id, "Assessment")
    return services.assessment_detail(session, assessment)


# ---------------------------------------------------------------------------
# Routes: Alerts
# ---------------------------------------------------------------------------


@app.get("/api/destinations/{destination_id}/alerts", response_model=list[AlertOut],
         tags=["Alerts"], summary="List undismissed alerts for a destination")
def list_alerts(destination_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Destination, destination_id, "Destination")
    return services.list_open_alerts(session, destination_id)


@app.post("/api/alerts/{alert_id}/dismiss", response_model=AlertOut,
          tags=["Alerts"], summary="Dismiss an alert")
def dismiss_alert(alert_id: int, session: Session = Depends(db_session)):
    alert = _get_or_404(session, Alert, alert_id, "Alert")
    result = services.dismiss_alert(session, alert)
    session.commit()
    return result


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Admin"], summary="Liveness check")
def health():
    db_path = current_db_path()
    return {"ok": True, "database": str(db_path) if db_path else None}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(
        level=os.environ.get("SISTUR_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "sistur.app:app",
        host=os.environ.get("SISTUR_HOST", "127.0.0.1"),
        port=int(os.environ.get("SISTUR_PORT", "8002")),
    )


if __name__ == "__main__":
    main()
