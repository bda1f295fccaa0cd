"""
Quiz Access API Routes

Endpoints:
- GET /api/access/summary - Current entitlement state
- GET /api/access/ledger - Credit transaction history
- GET /api/access/quizzes/{quiz_id}/estimate - Credit cost of a quiz
- POST /api/access/quizzes/{quiz_id}/authorize - Gate a quiz attempt
- POST /api/access/ai/authorize - Gate an AI query
- POST /api/access/reconcile - Refresh packages from payments
- POST /api/access/payments/{reference}/settle - Settle a payment (admin)
- POST /api/access/payments/{reference}/fail - Fail a payment (admin)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from utils.auth import get_current_user, get_admin_user
from quiz_access.authorization import AccessGuard
from quiz_access.errors import AccessError
from quiz_access.models import AccessDecision, QuizCostEstimate, AccessSummary
from quiz_access.settlement import PaymentSettlement
from quiz_access.stores import Stores

logger = logging.getLogger(__name__)

access_router = APIRouter(prefix="/access", tags=["Quiz Access"])


def get_stores() -> Stores:
    """Stores bound to the application database."""
    from database import db
    return Stores.from_db(db)


def _http_error(e: AccessError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


# ==================== ENTITLEMENTS ====================

@access_router.get("/summary", response_model=AccessSummary)
async def get_summary(
    user: dict = Depends(get_current_user),
    stores: Stores = Depends(get_stores)
):
    """
    Get current user's access type, credits, free access and courses.
    """
    guard = AccessGuard(stores)
    try:
        return await guard.get_access_summary(user["username"])
    except AccessError as e:
        raise _http_error(e)


@access_router.get("/ledger")
async def get_ledger(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user),
    stores: Stores = Depends(get_stores)
):
    """
    Get credit history (ledger entries).

    Shows all credit transactions: usage, purchases, grants, reversals,
    free access.
    """
    guard = AccessGuard(stores)
    entries = await guard.ledger.history(user["id"], limit)

    return {
        "entries": entries,
        "count": len(entries)
    }


@access_router.post("/reconcile")
async def reconcile(
    user: dict = Depends(get_current_user),
    stores: Stores = Depends(get_stores)
):
    """Re-derive packages, courses and access type from the user's payments."""
    guard = AccessGuard(stores)
    try:
        updated = await guard.reconcile_packages(user["id"])
    except AccessError as e:
        raise _http_error(e)

    return {
        "access_type": updated.get("access_type"),
        "is_subscribed": updated.get("is_subscribed", False),
        "package_ids": updated.get("package_ids", []),
        "courses": updated.get("courses", []),
        "quiz_credits": updated.get("quiz_credits", 0)
    }


# ==================== QUIZ ACCESS ====================

@access_router.get("/quizzes/{quiz_id}/estimate", response_model=QuizCostEstimate)
async def estimate_quiz(
    quiz_id: str,
    user: dict = Depends(get_current_user),
    stores: Stores = Depends(get_stores)
):
    """
    Credit cost of a quiz attempt.

    Call this before starting a quiz to show the user the cost.
    Does NOT deduct any credits.
    """
    guard = AccessGuard(stores)
    try:
        return await guard.estimate_quiz_cost(user["username"], quiz_id)
    except AccessError as e:
        raise _http_error(e)


@access_router.post("/quizzes/{quiz_id}/authorize", response_model=AccessDecision)
async def authorize_quiz(
    quiz_id: str,
    user: dict = Depends(get_current_user),
    stores: Stores = Depends(get_stores)
):
    """Gate one quiz attempt, debiting credits when the access type requires it."""
    guard = AccessGuard(stores)
    try:
        return await guard.authorize_quiz_access(user["username"], quiz_id)
    except AccessError as e:
        logger.info(f"Quiz {quiz_id} denied for {user['username']}: {e.code}")
        raise _http_error(e)


# ==================== AI ACCESS ====================

@access_router.post("/ai/authorize", response_model=AccessDecision)
async def authorize_ai(
    user: dict = Depends(get_current_user),
    stores: Stores = Depends(get_stores)
):
    """Gate one AI query."""
    guard = AccessGuard(stores)
    try:
        return await guard.authorize_ai_access(user["username"])
    except AccessError as e:
        logger.info(f"AI access denied for {user['username']}: {e.code}")
        raise _http_error(e)


# ==================== PAYMENTS (ADMIN) ====================

@access_router.post("/payments/{reference}/settle")
async def settle_payment(
    reference: str,
    admin: dict = Depends(get_admin_user),
    stores: Stores = Depends(get_stores)
):
    """
    Settle a confirmed payment.

    Idempotent: settling the same reference twice grants nothing extra.
    """
    settlement = PaymentSettlement(stores)
    try:
        payment = await settlement.settle_payment(reference)
    except AccessError as e:
        raise _http_error(e)

    logger.info(f"Admin {admin['id']} settled payment {reference}")
    return {"payment": payment}


@access_router.post("/payments/{reference}/fail")
async def fail_payment(
    reference: str,
    admin: dict = Depends(get_admin_user),
    stores: Stores = Depends(get_stores)
):
    """Mark a pending payment failed."""
    settlement = PaymentSettlement(stores)
    try:
        payment = await settlement.fail_payment(reference)
    except AccessError as e:
        raise _http_error(e)

    return {"payment": payment}
