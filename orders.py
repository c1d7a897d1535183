"""
Order creation and status lifecycle.

Statuses: Confirmed (set at checkout) -> Ready for Pickup -> Completed.

By default any valid status may be set from any other, including going
backwards or skipping Ready for Pickup. ORDER_STATUS_POLICY=strict switches
to a forward-only table. Either way the customer is e-mailed after the new
status is stored; that e-mail runs as a separate task and cannot change the
outcome of the status change.
"""
from typing import Any, Callable, Dict, List, Optional

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, get_documents, parse_object_id, serialize_doc, utcnow
from errors import ConcurrentUpdate, InvalidStatus, InvalidStatusTransition, NotFound
from notifications import NotificationDispatcher
from schemas import Order, OrderStatus

logger = structlog.get_logger(__name__)

VALID_STATUSES = [s.value for s in OrderStatus]

PERMISSIVE = "permissive"
STRICT = "strict"

_FORWARD_TRANSITIONS = {
    OrderStatus.CONFIRMED: {OrderStatus.CONFIRMED, OrderStatus.READY_FOR_PICKUP, OrderStatus.COMPLETED},
    OrderStatus.READY_FOR_PICKUP: {OrderStatus.READY_FOR_PICKUP, OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: {OrderStatus.COMPLETED},  # Terminal
}

Scheduler = Callable[..., Any]


def run_inline(func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    """Scheduler that runs the task immediately, for callers outside a request."""
    func(*args, **kwargs)


class OrderLifecycleManager:
    def __init__(self, db: Database, dispatcher: NotificationDispatcher, policy: str = PERMISSIVE):
        if policy not in (PERMISSIVE, STRICT):
            raise ValueError(f"Unknown order status policy: {policy}")
        self.db = db
        self.dispatcher = dispatcher
        self.policy = policy

    def _check_transition(self, current: Optional[str], target: OrderStatus) -> None:
        if self.policy == PERMISSIVE:
            return
        try:
            current_status = OrderStatus(current)
        except ValueError:
            # Legacy or hand-edited status; let it be corrected
            return
        allowed = _FORWARD_TRANSITIONS[current_status]
        if target not in allowed:
            raise InvalidStatusTransition(
                current_status.value,
                target.value,
                [s.value for s in OrderStatus if s in allowed],
            )

    def set_status(self, order_id: str, new_status: str, schedule: Scheduler = run_inline) -> Dict[str, Any]:
        """Store `new_status` on the order and queue the customer e-mail.

        `schedule(func, *args)` queues the notification; in the HTTP layer
        this is BackgroundTasks.add_task, so the e-mail goes out after the
        response. Raises InvalidStatus (InvalidStatusTransition under the
        strict policy) or NotFound.
        """
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise InvalidStatus(new_status, VALID_STATUSES)

        _id = parse_object_id(order_id)
        if _id is None:
            raise NotFound("Order not found.")

        query: Dict[str, Any] = {"_id": _id}
        if self.policy == STRICT:
            current = self.db["order"].find_one(query, {"status": 1})
            if not current:
                raise NotFound("Order not found.")
            self._check_transition(current.get("status"), target)
            # Only apply if nobody moved the order since we looked at it
            query["status"] = current.get("status")

        updated = self.db["order"].find_one_and_update(
            query,
            {"$set": {"status": target.value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            if self.policy == STRICT:
                fresh = self.db["order"].find_one({"_id": _id}, {"status": 1})
                if fresh:
                    self._check_transition(fresh.get("status"), target)
                    raise ConcurrentUpdate()
            raise NotFound("Order not found.")

        order = serialize_doc(updated)
        logger.info("Order status updated", order_id=order["id"], status=target.value, policy=self.policy)

        schedule(self.dispatcher.notify_status_change, order)
        return order


def create_order(db: Database, order: Order) -> Dict[str, Any]:
    """Persist a checkout. Customer details are normalised and the status forced to Confirmed."""
    customer = order.customer_details
    normalised = order.model_copy(
        update={
            "customer_details": customer.model_copy(
                update={
                    "name": customer.name.strip(),
                    "email": customer.email.strip().lower(),
                    "phone": customer.phone.strip(),
                    "preferred_pickup_time": customer.preferred_pickup_time.strip(),
                    "special_instructions": customer.special_instructions.strip(),
                }
            ),
            "products": [p.model_copy(update={"name": p.name.strip()}) for p in order.products],
            "farmer": order.farmer.strip(),
            "status": OrderStatus.CONFIRMED.value,
        }
    )
    order_id = create_document("order", normalised, db)
    logger.info("Order created", order_id=order_id, farmer=normalised.farmer, total_amount=normalised.total_amount)
    return serialize_doc(db["order"].find_one({"_id": parse_object_id(order_id)}))


def orders_for_customer(db: Database, customer_name: str) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in get_documents("order", {"customer_details.name": customer_name}, database=db)]


def orders_for_farmer(db: Database, farmer_name: str) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in get_documents("order", {"farmer": farmer_name}, database=db)]
