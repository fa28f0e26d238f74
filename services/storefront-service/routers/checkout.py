"""Checkout API router."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth import CurrentUser, verify_token
from database import get_db
from dependencies import get_checkout_service
from schemas import CheckoutRequest
from services.checkout_service import CheckoutService

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.get("/validate")
def validate_checkout(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """Check the cart against live stock and prices before checkout."""
    return {
        "success": True,
        "message": "Cart is valid for checkout",
        "data": checkout_service.validate(db, user.id)
    }


@router.post("/process", status_code=201)
async def process_checkout(
    request: CheckoutRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """Checkout and process payment - requires authentication."""
    result = await checkout_service.process_checkout(db, user.id, request)
    return {"success": True, "message": "Order placed successfully", "data": result}
