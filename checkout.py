"""
Checkout dispatcher

Turns a user's cart into exactly one order. The flow for every method is:

    lock cart -> load lines -> stock policy -> strategy.authorize -> unit of work

The unit of work (order insert, inventory commit, cart clear) is journaled on
the order document itself (``inventory_committed`` / ``committed_lines``):
a failure inside the request is compensated on the spot, a crash is repaired
later by ``reconcile``.

Hosted checkouts are two-phase: ``checkout`` only opens the provider session
and stores a pending checkout; ``confirm_hosted`` creates the order when the
provider's webhook arrives.
"""
import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from carts import CartLine, CartStore
from errors import (
    CheckoutInProgressError,
    NotFoundError,
    OutOfStockError,
    PaymentDeclinedError,
    StoreError,
    ValidationError,
)
from inventory import InventoryLedger
from logs import get_logger
from orders import OrderBook
from payments import Checkout, PaymentStrategy, Receipt, provider_payment_status
from schemas import DeliveryStatus, Order, OrderItem, PaymentMethod, PendingCheckout

log = get_logger(__name__)

STOCK_POLICIES = ("clamp", "reject")


@dataclass
class CheckoutResult:
    message: str
    order_id: Optional[str] = None
    url: Optional[str] = None
    # lines reduced to the stock left, reported back to the buyer
    adjustments: List[dict] = field(default_factory=list)

    def to_response(self) -> dict:
        if self.url:
            return {"url": self.url, "adjustments": self.adjustments}
        return {
            "success": True,
            "message": self.message,
            "orderId": self.order_id,
            "adjustments": self.adjustments,
        }


class CheckoutDispatcher:
    def __init__(self, db: Database, strategies: Dict[PaymentMethod, PaymentStrategy],
                 stock_policy: str = config.CHECKOUT_STOCK_POLICY,
                 reconcile_grace_seconds: int = config.RECONCILE_GRACE_SECONDS):
        if stock_policy not in STOCK_POLICIES:
            raise ValueError(f"unknown stock policy {stock_policy!r}, expected one of {STOCK_POLICIES}")
        self.strategies = strategies
        self.stock_policy = stock_policy
        self.reconcile_grace_seconds = reconcile_grace_seconds
        self.carts = CartStore(db)
        self.ledger = InventoryLedger(db)
        self.book = OrderBook(db)
        self.pending = db["pending_checkout"]
        self.events = db["webhook_event"]

    # Synchronous entry point

    def checkout(self, user: dict, method: PaymentMethod | str, billing_address: Optional[dict] = None,
                 card_data: Optional[dict] = None, coupon: Optional[str] = None) -> CheckoutResult:
        method = PaymentMethod(method)
        user_id = str(user["_id"])
        if method is not PaymentMethod.HOSTED and not billing_address:
            raise ValidationError("Billing address is required")

        lock = self.carts.acquire_checkout_lock(user_id)
        try:
            cart_lines = self.carts.lines(user_id)
            if not cart_lines:
                raise ValidationError("Cart is empty")
            lines, adjustments = self._apply_stock_policy(cart_lines)
            if not lines:
                raise ValidationError("Items in your cart are out of stock")

            checkout = Checkout(
                user_id=user_id,
                email=user.get("email"),
                name=user.get("name"),
                lines=lines,
                billing_address=billing_address,
                card_data=card_data,
                coupon=coupon or None,
            )
            if method is PaymentMethod.HOSTED:
                return self._initiate_hosted(checkout, adjustments)

            try:
                receipt = self.strategies[method].authorize(checkout)
            except PaymentDeclinedError:
                log.info("checkout_declined", user_id=user_id, method=method.value)
                raise
            order_id = self._place_order(checkout, receipt)
            return CheckoutResult(message=receipt.message, order_id=order_id, adjustments=adjustments)
        finally:
            self.carts.release_checkout_lock(user_id, lock)

    def _apply_stock_policy(self, cart_lines: List[CartLine]):
        lines, adjustments = [], []
        for line in cart_lines:
            granted = self.ledger.reserve(line.product_id, line.size, line.qty)
            if granted < line.qty:
                if self.stock_policy == "reject":
                    raise OutOfStockError(line.product_id, line.size, line.qty, granted)
                adjustments.append({
                    "product_id": line.product_id,
                    "name": line.display_name,
                    "size": line.size,
                    "requested": line.qty,
                    "granted": granted,
                })
            if granted > 0:
                lines.append(replace(line, qty=granted))
        return lines, adjustments

    @staticmethod
    def _order_items(lines: List[CartLine]) -> List[OrderItem]:
        return [
            OrderItem(product_id=line.product_id, name=line.display_name, image=line.image,
                      price=line.price, quantity=line.qty, size=line.size)
            for line in lines
        ]

    def _place_order(self, checkout: Checkout, receipt: Receipt) -> str:
        """Insert the order, commit inventory, clear the cart. All or nothing."""
        order = Order(
            user_id=checkout.user_id,
            payment_method=receipt.method,
            products=self._order_items(checkout.lines),
            subtotal=checkout.subtotal,
            total=checkout.subtotal,
            shipping=checkout.billing_address,
            billing_address=checkout.billing_address,
            card_details=receipt.card_details,
            payment_status=receipt.payment_status,
        )
        order_id = self.book.insert(order)

        committed = []
        try:
            for index, item in enumerate(order.products):
                self.ledger.commit(item.product_id, item.size, item.quantity)
                committed.append(index)
                self.book.mark_line_committed(order_id, index, item.quantity)
        except Exception:
            self._compensate(order_id, order.products, committed)
            raise

        self.carts.clear(checkout.user_id)
        self.book.mark_committed(order_id)
        log.info("order_created", order_id=order_id, user_id=checkout.user_id,
                 method=receipt.method.value, total=order.total, lines=len(order.products))
        return order_id

    def _compensate(self, order_id: str, products: List[OrderItem], committed: List[int]) -> None:
        # order goes first: a crash after this point under-counts stock, never oversells
        self.book.delete(order_id)
        for index in committed:
            item = products[index]
            self.ledger.release(item.product_id, item.size, item.quantity)
        log.warning("order_rolled_back", order_id=order_id, released_lines=len(committed))

    # Hosted two-phase checkout

    def _initiate_hosted(self, checkout: Checkout, adjustments: List[dict]) -> CheckoutResult:
        token = uuid.uuid4().hex
        pending = PendingCheckout(
            user_id=checkout.user_id,
            lines=self._order_items(checkout.lines),
            billing_address=checkout.billing_address,
            coupon=checkout.coupon,
        )
        self.pending.insert_one({"_id": token, **pending.model_dump()})
        checkout.token = token
        try:
            receipt = self.strategies[PaymentMethod.HOSTED].authorize(checkout)
        except Exception:
            self.pending.delete_one({"_id": token})
            raise
        self.pending.update_one({"_id": token}, {"$set": {"session_id": receipt.session_id}})
        log.info("hosted_checkout_started", user_id=checkout.user_id, token=token, session_id=receipt.session_id)
        return CheckoutResult(message=receipt.message, url=receipt.redirect_url, adjustments=adjustments)

    def confirm_hosted(self, event: Dict[str, Any]) -> Optional[str]:
        """Create the order for a completed hosted session. Safe to call repeatedly with one event."""
        event_type = event.get("type")
        if event_type != "checkout.session.completed":
            log.debug("webhook_ignored", event_type=event_type)
            return None
        event_id = event.get("id")
        if not event_id:
            raise ValidationError("Event id is missing")

        try:
            self.events.insert_one({"_id": event_id, "type": event_type, "status": "processing",
                                    "received_at": datetime.utcnow()})
        except DuplicateKeyError:
            if not self._take_over_stale_event(event_id):
                seen = self.events.find_one({"_id": event_id}) or {}
                log.info("webhook_duplicate", event_id=event_id, status=seen.get("status"))
                return seen.get("order_id")

        try:
            order_id = self._confirm_session(event.get("data", {}).get("object", {}), event_id)
        except Exception:
            # let the provider's retry run again
            self.events.delete_one({"_id": event_id})
            raise
        self.events.update_one({"_id": event_id}, {"$set": {"status": "done", "order_id": order_id}})
        return order_id

    def _stale_cutoff(self) -> datetime:
        return datetime.utcnow() - timedelta(seconds=self.reconcile_grace_seconds)

    def _take_over_stale_event(self, event_id: str) -> bool:
        """Claim an event marker left in ``processing`` by a worker that died mid-delivery."""
        claimed = self.events.find_one_and_update(
            {"_id": event_id, "status": "processing", "received_at": {"$lt": self._stale_cutoff()}},
            {"$set": {"received_at": datetime.utcnow()}},
        )
        if claimed is None:
            return False
        log.warning("webhook_stale_event_retried", event_id=event_id)
        return True

    def _confirm_session(self, session: Dict[str, Any], event_id: Optional[str] = None) -> str:
        metadata = session.get("metadata") or {}
        token = metadata.get("checkout_token")
        if not token:
            raise NotFoundError("Checkout")

        # the session is kept on the claim so reconcile can finish it if this worker dies
        pending = self.pending.find_one_and_update(
            {"_id": token, "status": "open"},
            {"$set": {"status": "confirming", "session": session, "event_id": event_id,
                      "confirming_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if pending is None:
            existing = self.pending.find_one({"_id": token})
            if existing is None:
                raise NotFoundError("Checkout", token)
            order = self.book.orders.find_one({"checkout_token": token})
            if order is not None:
                log.info("hosted_checkout_already_confirmed", token=token, order_id=str(order["_id"]))
                return str(order["_id"])
            pending = self._take_over_stale_pending(token, session, event_id)
            if pending is None:
                raise CheckoutInProgressError()
        return self._create_hosted_order(pending, session)

    def _take_over_stale_pending(self, token: str, session: Dict[str, Any],
                                 event_id: Optional[str]) -> Optional[dict]:
        """Reclaim a checkout stuck in ``confirming`` whose order was never written."""
        pending = self.pending.find_one_and_update(
            {"_id": token, "status": "confirming", "confirming_at": {"$lt": self._stale_cutoff()}},
            {"$set": {"session": session, "event_id": event_id, "confirming_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if pending is not None:
            log.warning("pending_checkout_taken_over", token=token, event_id=event_id)
        return pending

    def _create_hosted_order(self, pending: dict, session: Dict[str, Any]) -> str:
        token = pending["_id"]
        metadata = session.get("metadata") or {}
        try:
            order = Order(
                user_id=pending["user_id"],
                payment_method=PaymentMethod.HOSTED,
                payment_intent_id=session.get("payment_intent"),
                products=self._session_items(metadata.get("cart"), pending.get("lines", [])),
                subtotal=(session.get("amount_subtotal") or 0) / 100,
                total=(session.get("amount_total") or 0) / 100,
                shipping=session.get("customer_details"),
                billing_address=pending.get("billing_address") or session.get("customer_details"),
                payment_status=provider_payment_status(session.get("payment_status")),
                checkout_token=token,
            )
            order_id = self.book.insert(order)
        except Exception:
            self.pending.update_one({"_id": token}, {"$set": {"status": "open"}})
            raise
        self.pending.update_one({"_id": token}, {"$set": {"order_id": order_id}})

        shortfall = []
        for index, item in enumerate(order.products):
            missing = self._commit_line(order_id, index, item.product_id, item.size, item.quantity)
            if missing:
                shortfall.append(missing)
        self.carts.clear(order.user_id)
        self.book.mark_committed(order_id, shortfall)
        self.pending.update_one({"_id": token}, {"$set": {"status": "confirmed"}})
        log.info("order_created", order_id=order_id, user_id=order.user_id, method=PaymentMethod.HOSTED.value,
                 total=order.total, lines=len(order.products), shortfall=len(shortfall))
        return order_id

    @staticmethod
    def _session_items(blob: Optional[str], snapshot: List[dict]) -> List[OrderItem]:
        """Line items from the cart blob embedded in the session, priced from the pending snapshot."""
        try:
            entries = json.loads(blob) if blob else []
        except ValueError:
            raise ValidationError("Malformed cart metadata")
        if not entries:
            raise ValidationError("Cart metadata is empty")
        priced = {(line["product_id"], line["size"]): line for line in snapshot}
        items = []
        for entry in entries:
            product_id, size = str(entry["productId"]), int(entry["size"])
            line = priced.get((product_id, size), {})
            items.append(OrderItem(
                product_id=product_id,
                name=line.get("name"),
                image=line.get("image"),
                price=line.get("price", 0.0),
                quantity=int(entry["qty"]),
                size=size,
            ))
        return items

    def _commit_line(self, order_id: str, index: int, product_id: str, size: int, qty: int) -> Optional[dict]:
        """Commit one line of an already paid order. Returns a shortfall record if stock ran out."""
        committed = 0
        try:
            self.ledger.commit(product_id, size, qty)
            committed = qty
        except OutOfStockError:
            available = self.ledger.reserve(product_id, size, qty)
            if available:
                try:
                    self.ledger.commit(product_id, size, available)
                    committed = available
                except OutOfStockError:
                    pass
        except NotFoundError:
            log.warning("order_line_product_missing", order_id=order_id, product_id=product_id)
        self.book.mark_line_committed(order_id, index, committed)
        if committed == qty:
            return None
        log.warning("order_stock_shortfall", order_id=order_id, product_id=product_id, size=size,
                    requested=qty, committed=committed)
        return {"product_id": product_id, "size": size, "requested": qty, "committed": committed}

    # Recovery

    def reconcile(self, older_than: Optional[datetime] = None) -> int:
        """Roll forward interrupted units of work. Returns how many were repaired.

        Hosted confirmations that died before their order was written are
        finished first, then every uncommitted order has its remaining lines
        committed and its owner's cart cleared.
        """
        cutoff = older_than or self._stale_cutoff()
        repaired = self._redrive_pending(cutoff)
        for order in self.book.uncommitted(cutoff):
            order_id = str(order["_id"])
            done = set(order.get("committed_lines", []))
            shortfall = list(order.get("stock_shortfall", []))
            if order.get("delivery_status") != DeliveryStatus.CANCELLED.value:
                for index, line in enumerate(order.get("products", [])):
                    if index in done:
                        continue
                    missing = self._commit_line(order_id, index, line["product_id"], line["size"], line["quantity"])
                    if missing:
                        shortfall.append(missing)
            self.carts.clear(order["user_id"])
            self.book.mark_committed(order_id, shortfall)
            if order.get("checkout_token"):
                pending = self.pending.find_one_and_update({"_id": order["checkout_token"]},
                                                           {"$set": {"status": "confirmed", "order_id": order_id}})
                if pending:
                    self._finish_event(pending.get("event_id"), order_id)
            log.info("order_reconciled", order_id=order_id, shortfall=len(shortfall))
            repaired += 1
        return repaired

    def _redrive_pending(self, cutoff: datetime) -> int:
        """Finish hosted confirmations that were claimed but never produced an order."""
        repaired = 0
        for pending in list(self.pending.find({"status": "confirming", "confirming_at": {"$lt": cutoff}})):
            token = pending["_id"]
            existing = self.book.orders.find_one({"checkout_token": token})
            if existing is not None:
                order_id = str(existing["_id"])
                update = {"order_id": order_id}
                if existing.get("inventory_committed"):
                    update["status"] = "confirmed"
                    self._finish_event(pending.get("event_id"), order_id)
                # uncommitted orders are rolled forward by the order scan
                self.pending.update_one({"_id": token}, {"$set": update})
                continue
            if not pending.get("session"):
                log.warning("pending_checkout_without_session", token=token)
                continue
            try:
                order_id = self._create_hosted_order(pending, pending["session"])
            except StoreError as e:
                log.error("pending_checkout_redrive_failed", token=token, error=e.message)
                continue
            self._finish_event(pending.get("event_id"), order_id)
            log.info("pending_checkout_redriven", token=token, order_id=order_id)
            repaired += 1
        return repaired

    def _finish_event(self, event_id: Optional[str], order_id: str) -> None:
        if event_id:
            self.events.update_one({"_id": event_id}, {"$set": {"status": "done", "order_id": order_id}})
