"""
Transaction anomaly detection.

A candidate transaction is compared with the user's behaviour profile,
built from the last six months of history. Fraud rule hits and a
statistical score are combined into a 0-1 confidence. Anomalies of
medium severity or above are stored as alert notifications
(category "anomaly"); acknowledging an alert marks it read.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import pandas as pd
from sqlalchemy.orm import Session

from app.models import Account, Notification, Transaction
from app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

PROFILE_DAYS = 182
RISK_WINDOW_DAYS = 7
STALE_SYNC_DAYS = 7
TOP_ITEMS = 10
ANOMALY_SCORE_THRESHOLD = 0.7
FRAUD_CONFIDENCE_THRESHOLD = 0.5
ALERT_CATEGORY = "anomaly"
MAX_ALERTS = 50

SEVERITY_CONFIDENCE = {"critical": 0.9, "high": 0.75, "medium": 0.6, "low": 0.4}
SEVERITY_NOTIFICATION_TYPE = {"low": "info", "medium": "warning", "high": "error", "critical": "error"}

ALERT_TITLES = {
    "amount": "Unusual transaction amount",
    "frequency": "High transaction frequency",
    "location": "Transaction in a new location",
    "merchant": "Transaction with a new merchant",
    "time": "Transaction at an unusual time",
    "pattern": "Unusual transaction pattern",
}


def extract_merchant(description: Optional[str]) -> Optional[str]:
    """First word of the description, upper-cased."""
    if not description or not description.strip():
        return None
    return description.split()[0].upper()


@dataclass
class BehaviorProfile:
    average_amount: float = 100.0
    median_amount: float = 50.0
    std_dev: float = 50.0
    common_merchants: List[str] = field(default_factory=list)
    common_locations: List[str] = field(default_factory=list)
    typical_hours: List[int] = field(default_factory=lambda: list(range(9, 21)))
    # Weekday numbers, Monday is 0.
    weekly_pattern: List[int] = field(default_factory=lambda: [0, 1, 2, 3, 4])
    transaction_count: int = 0


@dataclass
class Features:
    amount: float
    hour: int
    weekday: int
    merchant: Optional[str]
    location: Optional[str]
    hours_since_last: float
    recent_count: int
    amount_deviation: float

    @property
    def is_weekend(self) -> bool:
        return self.weekday >= 5

    def is_new_merchant(self, profile: BehaviorProfile) -> bool:
        return bool(self.merchant) and self.merchant not in profile.common_merchants

    def is_new_location(self, profile: BehaviorProfile) -> bool:
        return bool(self.location) and self.location not in profile.common_locations


def build_profile(history: pd.DataFrame) -> BehaviorProfile:
    """Summarize a frame with date, amount, description and location columns."""
    if history.empty:
        return BehaviorProfile()
    amounts = history["amount"].astype(float)
    dates = pd.to_datetime(history["date"])
    merchants = history["description"].map(extract_merchant).dropna()
    locations = history["location"].dropna()
    return BehaviorProfile(
        average_amount=float(amounts.mean()),
        median_amount=float(amounts.median()),
        std_dev=float(amounts.std(ddof=0)),
        common_merchants=merchants.value_counts().head(TOP_ITEMS).index.tolist(),
        common_locations=locations.value_counts().head(TOP_ITEMS).index.tolist(),
        typical_hours=sorted(int(h) for h in dates.dt.hour.unique()),
        weekly_pattern=sorted(int(d) for d in dates.dt.dayofweek.unique()),
        transaction_count=len(history),
    )


@dataclass
class FraudRule:
    id: str
    description: str
    severity: str
    reason: str
    condition: Callable[[Features, BehaviorProfile], bool]


FRAUD_RULES = [
    FraudRule(
        "large-amount",
        "Transaction amount significantly exceeds your typical spending",
        "high",
        "amount",
        lambda f, p: f.amount > p.average_amount * 5 and f.amount_deviation > 3,
    ),
    FraudRule(
        "velocity",
        "Unusually high number of transactions in a short time",
        "critical",
        "frequency",
        lambda f, p: f.recent_count > 10 or (f.recent_count > 5 and f.hours_since_last < 0.5),
    ),
    FraudRule(
        "geographic",
        "Large transaction in an unusual location",
        "medium",
        "location",
        lambda f, p: f.is_new_location(p) and f.amount > p.average_amount * 2,
    ),
    FraudRule(
        "unusual-time",
        "Large transaction at a highly unusual time",
        "medium",
        "time",
        lambda f, p: f.hour < 4 and f.hour not in p.typical_hours and f.amount > p.average_amount * 1.5,
    ),
    FraudRule(
        "new-merchant-large-amount",
        "Large transaction with a previously unseen merchant",
        "medium",
        "merchant",
        lambda f, p: f.is_new_merchant(p) and f.amount > p.average_amount * 3,
    ),
    FraudRule(
        "round-number-testing",
        "Repeated small round amounts, a common card testing pattern",
        "high",
        "pattern",
        lambda f, p: f.amount % 10 == 0 and f.amount < 50 and f.recent_count > 3,
    ),
    FraudRule(
        "weekend-large-amount",
        "Unusually large transaction during the weekend",
        "low",
        "pattern",
        lambda f, p: f.is_weekend and f.amount > p.average_amount * 4 and f.weekday not in p.weekly_pattern,
    ),
    FraudRule(
        "rapid-succession",
        "Multiple transactions within minutes",
        "high",
        "frequency",
        lambda f, p: f.hours_since_last < 0.1 and f.recent_count > 2,
    ),
    FraudRule(
        "micro-transactions",
        "Pattern of very small transactions suggesting card validation",
        "critical",
        "frequency",
        lambda f, p: f.amount < 5 and f.recent_count > 5 and f.amount < p.average_amount * 0.1,
    ),
    FraudRule(
        "extreme-deviation",
        "Transaction completely outside your normal behaviour",
        "critical",
        "pattern",
        lambda f, p: (
            f.amount_deviation > 4
            and f.is_new_merchant(p)
            and f.is_new_location(p)
            and f.hour not in p.typical_hours
        ),
    ),
]


def rule_confidence(rule: FraudRule, features: Features, profile: BehaviorProfile) -> float:
    confidence = SEVERITY_CONFIDENCE[rule.severity]
    if rule.id == "large-amount":
        confidence = min(0.95, confidence + (features.amount_deviation - 3) * 0.05)
    elif rule.id == "velocity":
        confidence = min(0.95, confidence + (features.recent_count - 5) * 0.02)
    elif rule.id == "geographic" and profile.average_amount > 0:
        confidence = min(0.9, confidence + (features.amount / profile.average_amount - 2) * 0.05)
    elif rule.id == "unusual-time" and features.hour < 2:
        confidence += 0.1
    elif rule.id == "extreme-deviation":
        confidence = min(0.98, confidence + (features.amount_deviation - 4) * 0.02)
    return max(0.0, min(1.0, confidence))


def evaluate_rules(features: Features, profile: BehaviorProfile) -> Dict:
    """
    Apply every fraud rule.

    The overall confidence weighs the strongest hit at 70% and the mean of
    all hits at 30%.
    """
    hits = [
        (rule, rule_confidence(rule, features, profile))
        for rule in FRAUD_RULES
        if rule.condition(features, profile)
    ]
    if not hits:
        return {"is_fraud": False, "confidence": 0.0, "primary_reason": None, "reasons": []}

    strongest = max(hits, key=lambda hit: hit[1])
    average = sum(confidence for _, confidence in hits) / len(hits)
    confidence = strongest[1] * 0.7 + average * 0.3
    return {
        "is_fraud": confidence > FRAUD_CONFIDENCE_THRESHOLD,
        "confidence": confidence,
        "primary_reason": strongest[0].reason,
        "reasons": [rule.description for rule, _ in hits],
    }


def statistical_score(features: Features, profile: BehaviorProfile) -> float:
    """Mean weight of the behavioural signals that fired, capped at 1."""
    signals = []
    if features.amount_deviation > 2:
        signals.append(0.3)
    elif features.amount_deviation > 1.5:
        signals.append(0.15)
    if profile.typical_hours and features.hour not in profile.typical_hours:
        signals.append(0.2)
    if features.is_new_merchant(profile) and features.amount > profile.average_amount * 2:
        signals.append(0.25)
    if features.is_new_location(profile) and features.amount > profile.average_amount * 1.5:
        signals.append(0.2)
    if features.recent_count > 5:
        signals.append(0.3)
    if features.is_weekend and features.amount > profile.average_amount * 3:
        signals.append(0.15)
    if not signals:
        return 0.0
    return min(sum(signals) / len(signals), 1.0)


def determine_severity(confidence: float) -> str:
    if confidence >= 0.9:
        return "critical"
    if confidence >= 0.7:
        return "high"
    if confidence >= 0.5:
        return "medium"
    return "low"


def determine_anomaly_type(features: Features, profile: BehaviorProfile) -> str:
    if features.amount_deviation > 2:
        return "amount"
    if features.recent_count > 5:
        return "frequency"
    if features.is_new_location(profile):
        return "location"
    if features.is_new_merchant(profile):
        return "merchant"
    if features.hour not in profile.typical_hours:
        return "time"
    return "pattern"


def statistical_reasons(features: Features, profile: BehaviorProfile) -> List[str]:
    reasons = []
    if features.amount_deviation > 2:
        reasons.append(
            f"Transaction amount is {features.amount_deviation:.1f} standard deviations from your average"
        )
    if features.is_new_merchant(profile):
        reasons.append("Transaction with a new merchant")
    if features.is_new_location(profile):
        reasons.append("Transaction in a new location")
    if features.recent_count > 5:
        reasons.append(f"{features.recent_count} transactions in the last hour")
    if features.hour not in profile.typical_hours:
        reasons.append(f"Transaction at an unusual time ({features.hour}:00)")
    return reasons


def recommendations(fraud: Dict, score: float, features: Features, profile: BehaviorProfile) -> List[str]:
    items = []
    if fraud["is_fraud"]:
        items.append("Consider verifying this transaction with your bank")
        items.append("Review your account for any other suspicious activity")
    if score > ANOMALY_SCORE_THRESHOLD:
        items.append("Monitor your account closely for the next few days")
    if features.is_new_merchant(profile) and features.amount > 1000:
        items.append("Verify the merchant and keep receipts for large purchases")
    if features.recent_count > 5:
        items.append("Consider setting up transaction limits for added security")
    return items


def serialize_alert(notification: Notification) -> Dict:
    data = notification.data or {}
    return {
        "id": notification.id,
        "transaction_id": data.get("transaction_id"),
        "alert_type": data.get("alert_type", "unusual_spending"),
        "severity": data.get("severity", "low"),
        "anomaly_type": data.get("anomaly_type"),
        "title": notification.title,
        "message": notification.message,
        "details": data,
        "is_acknowledged": notification.is_read,
        "created_at": notification.created_at,
        "acknowledged_at": notification.read_at,
    }


class AnomalyDetectionService:
    """Scores transactions against the user's history and manages anomaly alerts."""

    def __init__(self, db: Session, notifier: Optional[NotificationService] = None):
        self.db = db
        self.notifier = notifier or NotificationService(db)

    def _history(self, user_id: str, since: datetime, until: Optional[datetime] = None) -> pd.DataFrame:
        query = self.db.query(
            Transaction.date, Transaction.amount, Transaction.description, Transaction.location
        ).filter(
            Transaction.user_id == user_id,
            Transaction.date >= since,
        )
        if until is not None:
            query = query.filter(Transaction.date <= until)
        rows = [tuple(row) for row in query.all()]
        return pd.DataFrame(rows, columns=["date", "amount", "description", "location"])

    def profile(self, user_id: str, now: Optional[datetime] = None) -> BehaviorProfile:
        now = now or datetime.utcnow()
        return build_profile(self._history(user_id, now - timedelta(days=PROFILE_DAYS)))

    def extract_features(self, user_id: str, candidate: Dict, profile: BehaviorProfile) -> Features:
        when: datetime = candidate["date"]
        last = self.db.query(Transaction.date).filter(
            Transaction.user_id == user_id,
            Transaction.date <= when,
        ).order_by(Transaction.date.desc()).first()
        hours_since_last = (when - last[0]).total_seconds() / 3600 if last else 24.0
        recent_count = self.db.query(Transaction).filter(
            Transaction.user_id == user_id,
            Transaction.date >= when - timedelta(hours=1),
            Transaction.date <= when,
        ).count()

        merchant = candidate.get("merchant")
        if merchant and merchant.strip():
            merchant = merchant.strip().upper()
        else:
            merchant = extract_merchant(candidate.get("description"))

        amount = float(candidate["amount"])
        std_dev = profile.std_dev or 1.0
        return Features(
            amount=amount,
            hour=when.hour,
            weekday=when.weekday(),
            merchant=merchant,
            location=candidate.get("location") or None,
            hours_since_last=hours_since_last,
            recent_count=recent_count,
            amount_deviation=abs(amount - profile.average_amount) / std_dev,
        )

    def analyze(self, user_id: str, candidate: Dict, now: Optional[datetime] = None) -> Dict:
        """
        Score a transaction and raise an alert for medium severity or above.

        `candidate` carries type, amount, description, date and optionally
        location, merchant and transaction_id. The caller commits.
        """
        profile = self.profile(user_id, now=now)
        features = self.extract_features(user_id, candidate, profile)
        fraud = evaluate_rules(features, profile)
        score = statistical_score(features, profile)

        confidence = max(fraud["confidence"], score)
        result = {
            "is_anomaly": fraud["is_fraud"] or score > ANOMALY_SCORE_THRESHOLD,
            "confidence": round(confidence, 4),
            "severity": determine_severity(confidence),
            "anomaly_type": fraud["primary_reason"] or determine_anomaly_type(features, profile),
            "reasons": fraud["reasons"] + statistical_reasons(features, profile),
            "risk_score": round(confidence * 100),
            "recommendations": recommendations(fraud, score, features, profile),
            "alert_id": None,
        }

        if result["is_anomaly"] and result["severity"] != "low":
            alert = self._create_alert(user_id, result, candidate)
            result["alert_id"] = alert.id
            logger.info(
                f"[ANOMALY] Flagged {result['anomaly_type']} anomaly for user {user_id} "
                f"(severity={result['severity']}, risk={result['risk_score']})"
            )
        return result

    def _create_alert(self, user_id: str, result: Dict, candidate: Dict) -> Notification:
        amount = float(candidate["amount"])
        message = f"A transaction of {amount:.2f} for \"{candidate.get('description')}\" was flagged as unusual."
        if result["reasons"]:
            message = f"{message} Reason: {result['reasons'][0]}"
        transaction_id = candidate.get("transaction_id")
        return self.notifier.notify(
            user_id,
            title=ALERT_TITLES.get(result["anomaly_type"], "Suspicious activity detected"),
            message=message,
            notification_type=SEVERITY_NOTIFICATION_TYPE[result["severity"]],
            category=ALERT_CATEGORY,
            data={
                "alert_type": "unusual_spending" if result["anomaly_type"] == "amount" else "fraud_detection",
                "severity": result["severity"],
                "anomaly_type": result["anomaly_type"],
                "transaction_id": str(transaction_id) if transaction_id else None,
                "transaction": {
                    "amount": amount,
                    "description": candidate.get("description"),
                    "date": candidate["date"].isoformat(),
                },
                "confidence": result["confidence"],
                "risk_score": result["risk_score"],
                "reasons": result["reasons"],
                "recommendations": result["recommendations"],
            },
        )

    def _alerts_query(self, user_id: str):
        return self.db.query(Notification).filter(
            Notification.user_id == user_id,
            Notification.category == ALERT_CATEGORY,
        )

    def active_alerts(self, user_id: str) -> List[Dict]:
        notifications = self._alerts_query(user_id).filter(
            Notification.is_read == False  # noqa: E712
        ).order_by(Notification.created_at.desc()).limit(MAX_ALERTS).all()
        return [serialize_alert(n) for n in notifications]

    def list_anomalies(
        self,
        user_id: str,
        severity: Optional[str] = None,
        anomaly_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict:
        """All recorded anomaly alerts, acknowledged or not, newest first."""
        query = self._alerts_query(user_id)
        if start_date:
            query = query.filter(Notification.created_at >= start_date)
        if end_date:
            query = query.filter(Notification.created_at <= end_date)
        alerts = [serialize_alert(n) for n in query.order_by(Notification.created_at.desc()).all()]
        # Severity and type live in the JSON payload.
        if severity:
            alerts = [a for a in alerts if a["severity"] == severity]
        if anomaly_type:
            alerts = [a for a in alerts if a["anomaly_type"] == anomaly_type]
        start = (page - 1) * limit
        return {"data": alerts[start:start + limit], "total": len(alerts), "page": page, "limit": limit}

    def acknowledge(self, user_id: str, alert_id) -> Dict:
        """
        Raises:
            LookupError: If the alert does not exist or belongs to another user
        """
        alert = self._alerts_query(user_id).filter(Notification.id == alert_id).first()
        if not alert:
            raise LookupError(f"Alert not found: {alert_id}")
        if not alert.is_read:
            alert.is_read = True
            alert.read_at = datetime.utcnow()
            self.db.flush()
        return serialize_alert(alert)

    def risk_score(self, user_id: str, now: Optional[datetime] = None) -> Dict:
        """
        Component risks on a 0-100 scale and their weighted overall score.

        Recent activity is the last RISK_WINDOW_DAYS days.
        """
        now = now or datetime.utcnow()
        profile = self.profile(user_id, now=now)
        recent = self._history(user_id, now - timedelta(days=RISK_WINDOW_DAYS), now)

        transaction_risk = time_risk = location_risk = 0
        if not recent.empty:
            amounts = recent["amount"].astype(float)
            hours = pd.to_datetime(recent["date"]).dt.hour
            locations = recent["location"].dropna()
            transaction_risk = min(round((amounts > profile.average_amount * 2).mean() * 30), 100)
            time_risk = min(round(((hours < 6) | (hours > 22)).mean() * 100), 100)
            unknown = (~locations.isin(profile.common_locations)).sum()
            location_risk = min(round(unknown / len(recent) * 100), 100)

        behavior_risk = min(max(0, 50 - len(profile.common_merchants) * 2), 100)
        account_risk = self._account_risk(user_id, now)

        overall = round(
            transaction_risk * 0.3
            + behavior_risk * 0.2
            + account_risk * 0.2
            + time_risk * 0.15
            + location_risk * 0.15
        )
        return {
            "transaction_risk": int(transaction_risk),
            "behavior_risk": int(behavior_risk),
            "account_risk": int(account_risk),
            "time_risk": int(time_risk),
            "location_risk": int(location_risk),
            "overall_risk": int(overall),
        }

    def _account_risk(self, user_id: str, now: datetime) -> int:
        accounts = self.db.query(Account).filter(Account.user_id == user_id).all()
        if not accounts:
            return 0
        stale_before = now - timedelta(days=STALE_SYNC_DAYS)
        stale = [a for a in accounts if not a.last_sync_at or a.last_sync_at < stale_before]
        risk = min(len(accounts) * 5, 25) + len(stale) / len(accounts) * 25
        return min(round(risk), 100)
