"""Orders API router."""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from auth import CurrentUser, require_admin, verify_token
from database import get_db
from dependencies import get_order_service
from schemas import BulkOrderUpdate, OrderNotesUpdate, OrderStatusUpdate, OrderTrackingUpdate
from services.order_service import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


# Static paths are declared before /{order_id} so they aren't captured by it

@router.get("/user")
def get_user_orders(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    order_service: OrderService = Depends(get_order_service)
):
    """Get user's orders - requires authentication."""
    return {"success": True, "data": order_service.get_user_orders(db, user.id)}


@router.get("/user/{order_id}")
def get_user_order(
    order_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(verify_token),
    order_service: OrderService = Depends(get_order_service)
):
    """Get one of user's orders; admins may read any order."""
    return {"success": True, "data": order_service.get_order_details(db, order_id, user)}


@router.get("/stats")
def get_order_stats(
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    return {"success": True, "data": order_service.get_stats(db)}


@router.put("/bulk")
def bulk_update_orders(
    request: BulkOrderUpdate,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    """Apply approve, ship, deliver or cancel to several orders at once."""
    result = order_service.bulk_update(
        db,
        request.order_ids,
        request.action,
        force=request.force,
        admin_id=admin.id
    )
    return {
        "success": True,
        "message": f"{result['updated']} orders updated",
        "data": result
    }


@router.get("")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    """Get all orders (admin), optionally filtered by status."""
    return {"success": True, "data": order_service.list_orders(db, page, limit, status)}


@router.get("/{order_id}")
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    return {"success": True, "data": order_service.get_order_details(db, order_id, admin)}


@router.put("/{order_id}/status")
def update_order_status(
    order_id: int,
    request: OrderStatusUpdate,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    """Change an order's status; cancelling returns its quantity to stock."""
    order = order_service.update_status(db, order_id, request.status, admin_id=admin.id)
    return {"success": True, "message": "Order status updated", "data": order}


@router.put("/{order_id}/notes")
def update_order_notes(
    order_id: int,
    request: OrderNotesUpdate,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    order = order_service.update_notes(db, order_id, request.notes)
    return {"success": True, "message": "Order notes updated", "data": order}


@router.put("/{order_id}/tracking")
def update_order_tracking(
    order_id: int,
    request: OrderTrackingUpdate,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    order = order_service.update_tracking(db, order_id, request.tracking_number)
    return {"success": True, "message": "Tracking number updated", "data": order}
