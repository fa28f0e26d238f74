"""Cart API router."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth import CurrentUser, verify_token
from database import get_db
from dependencies import get_cart_service
from schemas import AddToCartRequest, UpdateCartItemRequest
from services.cart_service import CartService

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("")
def get_cart(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    cart_service: CartService = Depends(get_cart_service)
):
    """Get user's cart with summary - requires authentication."""
    return {"success": True, "data": cart_service.get_cart(db, user.id)}


@router.get("/count")
def get_cart_count(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    cart_service: CartService = Depends(get_cart_service)
):
    """Get the number of lines in user's cart."""
    return {"success": True, "data": {"count": cart_service.get_item_count(db, user.id)}}


@router.post("")
def add_to_cart(
    request: AddToCartRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    cart_service: CartService = Depends(get_cart_service)
):
    """Add item to cart - requires authentication."""
    item = cart_service.add_item(db, user.id, request.product_id, request.quantity)
    return {"success": True, "message": "Product added to cart", "data": item}


@router.put("/{cart_item_id}")
def update_cart_item(
    cart_item_id: int,
    request: UpdateCartItemRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    cart_service: CartService = Depends(get_cart_service)
):
    """Update a cart line quantity; quantity 0 removes the line."""
    item = cart_service.update_item(db, user.id, cart_item_id, request.quantity)
    if item is None:
        return {"success": True, "message": "Item removed from cart"}
    return {"success": True, "message": "Cart updated", "data": item}


@router.delete("/{cart_item_id}")
def remove_cart_item(
    cart_item_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    cart_service: CartService = Depends(get_cart_service)
):
    cart_service.remove_item(db, user.id, cart_item_id)
    return {"success": True, "message": "Item removed from cart"}


@router.delete("")
def clear_cart(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    cart_service: CartService = Depends(get_cart_service)
):
    removed = cart_service.clear(db, user.id)
    return {"success": True, "message": "Cart cleared", "data": {"removed": removed}}
