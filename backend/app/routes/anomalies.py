from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional
from uuid import UUID

from app.database import get_db
from app.db_helpers import get_user_id
from app.schemas import (
    AnalyzeTransactionRequest,
    AnomalyAlertResponse,
    AnomalyListResponse,
    AnomalyResult,
    AnomalySeverity,
    RiskScoreResponse,
)
from app.services.anomaly_service import AnomalyDetectionService

router = APIRouter()


@router.post("/analyze-transaction", response_model=AnomalyResult)
def analyze_transaction(
    payload: AnalyzeTransactionRequest,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Score a transaction against the user's spending profile."""
    user_id = get_user_id(user_id)
    result = AnomalyDetectionService(db).analyze(user_id, payload.model_dump())
    db.commit()
    return result


@router.get("/risk-score", response_model=RiskScoreResponse)
def get_risk_score(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Overall account risk and its components, each 0-100."""
    user_id = get_user_id(user_id)
    return AnomalyDetectionService(db).risk_score(user_id)


@router.get("/alerts", response_model=list[AnomalyAlertResponse])
def list_active_alerts(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Unacknowledged anomaly alerts, newest first."""
    user_id = get_user_id(user_id)
    return AnomalyDetectionService(db).active_alerts(user_id)


@router.get("/anomalies", response_model=AnomalyListResponse)
def list_anomalies(
    severity: Optional[AnomalySeverity] = None,
    anomaly_type: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Anomaly history with optional severity, type and date filters."""
    user_id = get_user_id(user_id)
    return AnomalyDetectionService(db).list_anomalies(
        user_id,
        severity=severity,
        anomaly_type=anomaly_type,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )


@router.post("/alerts/{alert_id}/acknowledge", response_model=AnomalyAlertResponse)
def acknowledge_alert(
    alert_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    user_id = get_user_id(user_id)
    try:
        alert = AnomalyDetectionService(db).acknowledge(user_id, alert_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Alert not found")
    db.commit()
    return alert
