from fastapi import APIRouter
from app.routes import (
    accounts,
    anomalies,
    categories,
    events,
    goals,
    investments,
    notifications,
    recurring,
    reports,
    subscriptions,
    transactions,
    users,
)

api_router = APIRouter()

api_router.include_router(users.router, prefix="/users", tags=["users"])
api_router.include_router(accounts.router, prefix="/accounts", tags=["accounts"])
api_router.include_router(categories.router, prefix="/categories", tags=["categories"])
api_router.include_router(transactions.router, prefix="/transactions", tags=["transactions"])
api_router.include_router(recurring.router, prefix="/recurring", tags=["recurring"])
api_router.include_router(goals.router, prefix="/goals", tags=["goals"])
api_router.include_router(investments.router, prefix="/investments", tags=["investments"])
api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
api_router.include_router(reports.router, prefix="/reports", tags=["reports"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
api_router.include_router(events.router, prefix="/events", tags=["events"])
api_router.include_router(anomalies.router, prefix="/anomaly-detection", tags=["anomaly-detection"])

