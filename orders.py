"""
Order orchestration: turns a cart into an order and keeps order, payment
and inventory state consistent afterwards.

Placement runs as one transaction: the product rows are locked, stock is
checked for every line, the order and its items are written with the
current prices and a frozen copy of the shipping address, stock is
decremented and (for providers that settle at delivery) the cart is
cleared. Any failure rolls the whole thing back. Placements for the same
user are serialised on their user row, and a cart that an unpaid online
order is still waiting on cannot be turned into a second order.

Payment results for online providers arrive through a webhook that may be
delivered more than once and in any order relative to our own reads, so
reconciliation only ever moves an order out of `pending` and does its side
effects exactly on that transition.

Emails are handed to `dispatch` after commit and never affect the outcome.
"""
import logging
from decimal import Decimal
from typing import Callable, Dict, List, NamedTuple, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from cart import clear_cart
from errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ShopError,
    ValidationError,
)
from models import CartItem, Order, OrderItem, OrderStatus, PaymentMethod, Product, User
from notifier import Notifier, OrderNotification
from payments import PaymentProvider, get_provider, to_minor_units
from users import get_shipping_address, require_complete_address

logger = logging.getLogger(__name__)

SHIPPING_FEE = Decimal("0.00")

ACTOR_USER = "user"
ACTOR_ADMIN = "admin"

CANCELLABLE_FROM = {
    ACTOR_USER: {OrderStatus.PENDING},
    ACTOR_ADMIN: {OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED},
}
# goods are still in the warehouse, so cancelling puts them back on the shelf
RESTOCK_ON_CANCEL_FROM = {OrderStatus.PENDING, OrderStatus.PAID}

# Admin fulfilment. Cash-on-delivery orders are settled at the door and never
# pass through `paid`; online orders must be paid before they ship.
FULFILMENT_TRANSITIONS = {
    PaymentMethod.COD: {
        OrderStatus.PENDING: {OrderStatus.SHIPPED, OrderStatus.DELIVERED},
        OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    },
    PaymentMethod.UPI: {
        OrderStatus.PAID: {OrderStatus.SHIPPED, OrderStatus.DELIVERED},
        OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    },
}


class OrderSummary(NamedTuple):
    id: int
    subtotal: Decimal
    shipping: Decimal
    total: Decimal
    status: str
    payment_method: str


class ReconcileResult:
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    NOT_FINAL = "not_final"
    UNKNOWN_ORDER = "unknown_order"
    MALFORMED = "malformed"
    AMOUNT_MISMATCH = "amount_mismatch"


def run_now(fn: Callable, *args, **kwargs) -> None:
    fn(*args, **kwargs)


def order_detail(order: Order) -> dict:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "subtotal": order.total - SHIPPING_FEE,
        "shipping": SHIPPING_FEE,
        "total": order.total,
        "status": order.status,
        "payment_method": order.payment_method,
        "cancelled_by": order.cancelled_by,
        "gateway_order_id": order.gateway_order_id,
        "payment_id": order.payment_id,
        "created_at": order.created_at,
        "shipping_address": order.shipping_snapshot(),
        "items": [
            {
                "product_id": item.product_id,
                "name": item.product.name if item.product is not None else None,
                "image_url": item.product.image_url if item.product is not None else None,
                "quantity": item.quantity,
                "price": item.price,
            }
            for item in order.items
        ],
    }


class OrderService:
    def __init__(
        self,
        db: Session,
        notifier: Notifier,
        providers: Dict[str, PaymentProvider],
        dispatch: Optional[Callable] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.providers = providers
        self.dispatch = dispatch or run_now

    # -----------------
    # Notifications
    # -----------------
    def _send(self, recipients: List[Optional[str]], notification: OrderNotification) -> None:
        try:
            self.notifier.notify(recipients, notification)
        except Exception:
            logger.exception("Notification for order %s failed", notification.order_id)

    def _notify(self, order: Order, message: str, customer: bool = True, admin: bool = True) -> None:
        # built eagerly: the session may be gone by the time dispatch runs it
        notification = OrderNotification(
            order_id=order.id,
            total=str(order.total),
            items=[
                {"name": i.product.name if i.product is not None else f"#{i.product_id}", "quantity": i.quantity, "price": str(i.price)}
                for i in order.items
            ],
            status=order.status,
            payment_method=order.payment_method,
            message=message,
            shipping=order.shipping_snapshot(),
        )
        recipients = []
        if customer:
            recipients.append(order.user.email if order.user is not None else None)
        if admin:
            recipients.append(self.notifier.admin_email)
        try:
            self.dispatch(self._send, recipients, notification)
        except Exception:
            logger.exception("Could not schedule notification for order %s", order.id)

    def _commit(self, what: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Commit failed while trying to %s", what)
            raise PersistenceError(f"Could not {what}") from exc

    # -----------------
    # Placement
    # -----------------
    def place_order(self, user_id: int, payment_method: str) -> OrderSummary:
        provider = get_provider(self.providers, payment_method)
        address = require_complete_address(get_shipping_address(self.db, user_id))

        try:
            # one placement per user at a time: a double submit waits here
            self.db.scalar(select(User.id).where(User.id == user_id).with_for_update())
            lines = self._cart_lines(user_id)
            if not lines:
                raise EmptyCartError()
            if self._cart_held_by_pending_order(user_id):
                raise InvalidStateError(
                    "An order for this cart is already awaiting payment; pay for it or cancel it first"
                )

            # locked in id order so concurrent placements cannot deadlock
            products = {
                p.id: p
                for p in self.db.scalars(
                    select(Product)
                    .where(Product.id.in_([line.product_id for line in lines]))
                    .order_by(Product.id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
            }
            for line in lines:
                product = products[line.product_id]
                if product.stock < line.quantity:
                    raise InsufficientStockError(product.name, line.quantity, product.stock)

            subtotal = sum((products[line.product_id].price * line.quantity for line in lines), Decimal("0.00"))
            order = Order(
                user_id=user_id,
                total=subtotal + SHIPPING_FEE,
                status=OrderStatus.PENDING,
                payment_method=provider.name,
                **address,
            )
            order.items = [
                OrderItem(product_id=line.product_id, quantity=line.quantity, price=products[line.product_id].price)
                for line in lines
            ]
            self.db.add(order)

            for line in lines:
                result = self.db.execute(
                    update(Product)
                    .where(Product.id == line.product_id, Product.stock >= line.quantity)
                    .values(stock=Product.stock - line.quantity)
                )
                if result.rowcount != 1:
                    product = products[line.product_id]
                    raise InsufficientStockError(product.name, line.quantity, product.stock)

            if provider.clears_cart_on_placement:
                cleared = clear_cart(self.db, user_id)
                if cleared == 0:
                    # another placement consumed this cart after we read it
                    raise EmptyCartError()
                if cleared != len(lines):
                    raise InvalidStateError("Cart changed while the order was being placed, please review it")

            self.db.commit()
        except ShopError as exc:
            self.db.rollback()
            logger.info("Order placement for user %s rejected: %s", user_id, exc.message)
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Order placement for user %s failed", user_id)
            raise PersistenceError("Could not place order") from exc

        logger.info(
            "Order %s placed by user %s (%s, total %s)", order.id, user_id, order.payment_method, order.total
        )
        if provider.clears_cart_on_placement:
            self._notify(order, "Thanks for your order! We'll update you when it's shipped.")
        else:
            self._notify(order, "Your order has been created and is awaiting payment.")
        return OrderSummary(
            id=order.id,
            subtotal=subtotal,
            shipping=SHIPPING_FEE,
            total=order.total,
            status=order.status,
            payment_method=order.payment_method,
        )

    def _cart_lines(self, user_id: int):
        return self.db.execute(
            select(CartItem.product_id, CartItem.quantity)
            .where(CartItem.user_id == user_id)
            .order_by(CartItem.product_id)
        ).all()

    def _cart_held_by_pending_order(self, user_id: int) -> bool:
        # providers that keep the cart until payment tie it to their pending order
        holding = [name for name, p in self.providers.items() if not p.clears_cart_on_placement]
        if not holding:
            return False
        return (
            self.db.scalar(
                select(Order.id)
                .where(
                    Order.user_id == user_id,
                    Order.status == OrderStatus.PENDING,
                    Order.payment_method.in_(holding),
                )
                .limit(1)
            )
            is not None
        )

    # -----------------
    # Payment
    # -----------------
    def _owned_order(self, order_id: int, user_id: Optional[int], lock: bool = False) -> Order:
        stmt = select(Order).where(Order.id == order_id)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        order = self.db.scalar(stmt)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def initiate_payment(self, order_id: int, user_id: int, amount: Optional[Decimal] = None) -> dict:
        order = self._owned_order(order_id, user_id)
        provider = get_provider(self.providers, order.payment_method)
        if order.status != OrderStatus.PENDING:
            raise InvalidStateError(f"Order is {order.status}, payment can only start while pending")
        if amount is not None and to_minor_units(amount) != to_minor_units(order.total):
            raise ValidationError("Amount does not match the order total", expected=str(order.total))

        redirect = provider.initiate(order)

        order.gateway_order_id = redirect["gateway_order_id"]
        self._commit("store the gateway reference")
        logger.info("Payment initiated for order %s (gateway ref %s)", order.id, order.gateway_order_id)
        return {
            "order_id": order.id,
            "provider": provider.name,
            "redirect_url": redirect["redirect_url"],
            "gateway_order_id": order.gateway_order_id,
            "amount": redirect["amount"],
        }

    def _find_for_callback(self, callback) -> Optional[Order]:
        stmt = select(Order).with_for_update().execution_options(populate_existing=True)
        if callback.order_id is not None:
            stmt = stmt.where(Order.id == callback.order_id)
        else:
            stmt = stmt.where(Order.gateway_order_id == callback.gateway_order_id)
        return self.db.scalar(stmt)

    def reconcile_payment(self, raw_body: bytes, signature: Optional[str]) -> str:
        provider = get_provider(self.providers, PaymentMethod.UPI)
        provider.verify_webhook(raw_body, signature)

        try:
            callback = provider.parse_callback(raw_body)
        except ValidationError as exc:
            logger.warning("Ignoring malformed payment webhook: %s", exc.message)
            return ReconcileResult.MALFORMED
        if callback.status is None:
            logger.info("Payment webhook with non-final code %s, nothing to do", callback.code)
            return ReconcileResult.NOT_FINAL

        try:
            order = self._find_for_callback(callback)
            if order is None:
                self.db.rollback()
                logger.warning(
                    "Payment webhook for unknown order (id=%s, ref=%s)", callback.order_id, callback.gateway_order_id
                )
                return ReconcileResult.UNKNOWN_ORDER

            if order.status != OrderStatus.PENDING:
                self.db.rollback()
                if order.status == OrderStatus.CANCELLED and callback.status == OrderStatus.PAID:
                    logger.warning("Order %s was cancelled but the gateway reports it paid; refund needed", order.id)
                else:
                    logger.info("Duplicate payment webhook for order %s (already %s)", order.id, order.status)
                return ReconcileResult.DUPLICATE

            if (
                callback.status == OrderStatus.PAID
                and callback.amount is not None
                and callback.amount != to_minor_units(order.total)
            ):
                self.db.rollback()
                logger.error(
                    "Payment webhook for order %s reports %s paise, expected %s",
                    order.id, callback.amount, to_minor_units(order.total),
                )
                return ReconcileResult.AMOUNT_MISMATCH

            order.status = callback.status
            order.payment_id = callback.payment_id
            if callback.gateway_order_id and not order.gateway_order_id:
                order.gateway_order_id = callback.gateway_order_id
            if callback.status == OrderStatus.PAID:
                clear_cart(self.db, order.user_id)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Payment reconciliation for order %s failed", callback.order_id)
            raise PersistenceError("Could not record payment result") from exc

        logger.info("Order %s marked %s by gateway (payment %s)", order.id, order.status, order.payment_id)
        if order.status == OrderStatus.PAID:
            self._notify(order, "Payment received. Thanks for your order!")
        else:
            self._notify(order, "Your payment did not go through. Your cart is still saved, please try again.", admin=False)
        return ReconcileResult.APPLIED

    # -----------------
    # Lifecycle
    # -----------------
    def cancel_order(self, order_id: int, user_id: Optional[int], actor: str) -> dict:
        if actor not in CANCELLABLE_FROM:
            raise ValidationError(f"Unknown actor: {actor}")
        order = self._owned_order(order_id, user_id if actor == ACTOR_USER else None, lock=True)
        if order.status not in CANCELLABLE_FROM[actor]:
            self.db.rollback()
            raise InvalidStateError(f"Order is {order.status} and cannot be cancelled")

        try:
            if order.status in RESTOCK_ON_CANCEL_FROM:
                for item in order.items:
                    self.db.execute(
                        update(Product)
                        .where(Product.id == item.product_id)
                        .values(stock=Product.stock + item.quantity)
                    )
            order.status = OrderStatus.CANCELLED
            order.cancelled_by = actor
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Cancelling order %s failed", order_id)
            raise PersistenceError("Could not cancel order") from exc

        logger.info("Order %s cancelled by %s", order.id, actor)
        self._notify(order, f"Order cancelled by {actor}.", customer=actor == ACTOR_ADMIN)
        return order_detail(order)

    def update_status(self, order_id: int, new_status: str) -> dict:
        if new_status == OrderStatus.CANCELLED:
            return self.cancel_order(order_id, None, ACTOR_ADMIN)
        if new_status not in OrderStatus.ALL:
            raise ValidationError(f"Unknown status: {new_status}")
        if new_status in (OrderStatus.PAID, OrderStatus.FAILED):
            raise InvalidStateError("Payment status is set by the payment gateway only")

        order = self._owned_order(order_id, None, lock=True)
        allowed = FULFILMENT_TRANSITIONS.get(order.payment_method, {}).get(order.status, set())
        if new_status not in allowed:
            self.db.rollback()
            raise InvalidStateError(f"Cannot move a {order.payment_method} order from {order.status} to {new_status}")

        order.status = new_status
        self._commit("update order status")
        logger.info("Order %s moved to %s", order.id, new_status)
        self._notify(order, f"Your order is now {new_status}.", admin=False)
        return order_detail(order)

    # -----------------
    # Reads
    # -----------------
    def _detail_query(self):
        return select(Order).options(selectinload(Order.items).selectinload(OrderItem.product))

    def list_orders(self, user_id: int) -> List[dict]:
        orders = self.db.scalars(
            self._detail_query().where(Order.user_id == user_id).order_by(Order.created_at.desc(), Order.id.desc())
        )
        return [order_detail(o) for o in orders]

    def get_order(self, order_id: int, user_id: Optional[int] = None) -> dict:
        stmt = self._detail_query().where(Order.id == order_id)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        order = self.db.scalar(stmt)
        if order is None:
            raise NotFoundError("Order not found")
        return order_detail(order)

    def list_all_orders(self, status: Optional[str] = None, limit: int = 100) -> List[dict]:
        stmt = self._detail_query().order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)
        if status:
            stmt = stmt.where(Order.status == status)
        return [order_detail(o) for o in self.db.scalars(stmt)]
