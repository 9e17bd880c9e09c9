"""
Checkout orchestration: stock validation, order creation and payment
verification across the product and order collections.

Stock is only decremented when a payment is verified. Each line item is taken
with a single conditional update (``stock >= quantity``), so concurrent
confirmations can never drive a product's stock below zero. Lines already
taken for an order are put back when a later line fails, which makes the
decrement all-or-nothing per order.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

import config
from auth import is_privileged
from cart import compute_prices
from database import create_document, get_documents, serialize_doc, to_obj_id
from errors import (
    Forbidden,
    NotFound,
    PartialStockUpdateError,
    PaymentFailed,
    StockError,
    ValidationFailed,
)
from schemas import Order

logger = logging.getLogger(__name__)

MIN_TRANSACTION_ID_LENGTH = 10
PRICE_TOLERANCE = 0.01


def _find_product(db, product_id: str) -> Optional[dict]:
    oid = to_obj_id(product_id)
    if oid is None:
        return None
    return db["product"].find_one({"_id": oid})


def _stock_issue(product_id, product_name, issue, requested=None, available=None) -> dict:
    entry = {"product_id": product_id, "product_name": product_name, "issue": issue}
    if requested is not None:
        entry["requested"] = requested
        entry["available"] = available
    return entry


def check_stock(db, items: List[dict]) -> List[dict]:
    """Every availability problem in `items`; an empty list means all can be served."""
    issues = []
    for item in items:
        product = _find_product(db, item["product_id"])
        if not product:
            issues.append(_stock_issue(item["product_id"], item.get("name"), "Product not found"))
            continue
        available = int(product.get("stock", 0))
        if available < item["quantity"]:
            issues.append(
                _stock_issue(
                    str(product["_id"]),
                    product.get("name"),
                    "Out of stock" if available == 0 else "Insufficient stock",
                    requested=item["quantity"],
                    available=available,
                )
            )
    return issues


def validate_stock(db, items: List[dict]) -> List[dict]:
    issues = check_stock(db, items)
    if issues:
        raise StockError("Some items are out of stock or have insufficient quantity", issues)
    return items


def _check_prices(db, order_items: List[dict], prices: dict) -> None:
    subtotal = 0.0
    for item in order_items:
        product = _find_product(db, item["product_id"])
        if product is None:
            raise StockError(
                "Stock changed during checkout",
                [_stock_issue(item["product_id"], item.get("name"), "Product not found")],
            )
        subtotal += float(product["price"]) * item["quantity"]
    expected = compute_prices(subtotal)
    mismatched = [k for k, v in expected.items() if abs(float(prices.get(k, 0)) - v) > PRICE_TOLERANCE]
    if mismatched:
        raise ValidationFailed(
            "Order prices do not match current catalog prices",
            expected=expected,
            mismatched=mismatched,
        )


def create_order(db, user_id: str, order_items: List[dict], shipping_address: dict, prices: dict) -> dict:
    if not order_items:
        raise ValidationFailed("No order items provided")

    issues = check_stock(db, order_items)
    if issues:
        raise StockError("Stock changed during checkout", issues)

    if config.ENFORCE_SERVER_PRICING:
        _check_prices(db, order_items, prices)

    order = Order(
        user_id=user_id,
        order_items=order_items,
        shipping_address=shipping_address,
        payment_method="UPI",
        items_price=prices["items_price"],
        tax_price=prices["tax_price"],
        shipping_price=prices["shipping_price"],
        total_price=prices["total_price"],
    )
    order_id = create_document(db, "order", order)
    logger.info("Order %s created for user %s (%d items, total %.2f)", order_id, user_id, len(order_items), order.total_price)
    return _order_out(db["order"].find_one({"_id": to_obj_id(order_id)}))


def is_valid_transaction(transaction_id: Optional[str]) -> bool:
    """Stand-in for a gateway callback: any reference longer than 10 characters passes."""
    return bool(transaction_id) and len(transaction_id) > MIN_TRANSACTION_ID_LENGTH


def _take_stock(db, item: dict) -> None:
    oid = to_obj_id(item["product_id"])
    if oid is not None:
        result = db["product"].update_one(
            {"_id": oid, "stock": {"$gte": item["quantity"]}},
            {"$inc": {"stock": -item["quantity"]}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        )
        if result.matched_count == 1:
            return
    product = db["product"].find_one({"_id": oid}) if oid is not None else None
    if product is None:
        raise StockError(
            f"Product {item['name']} not found",
            [_stock_issue(item["product_id"], item["name"], "Product not found")],
        )
    available = int(product.get("stock", 0))
    raise StockError(
        f"Insufficient stock for {item['name']}",
        [
            _stock_issue(
                item["product_id"],
                item["name"],
                "Out of stock" if available == 0 else "Insufficient stock",
                requested=item["quantity"],
                available=available,
            )
        ],
    )


def _restore_stock(db, applied: List[dict]) -> None:
    failed = []
    for item in reversed(applied):
        try:
            result = db["product"].update_one({"_id": to_obj_id(item["product_id"])}, {"$inc": {"stock": item["quantity"]}})
            restored = result.matched_count == 1
        except PyMongoError:
            logger.exception("Could not restore %d units of product %s", item["quantity"], item["product_id"])
            restored = False
        if not restored:
            logger.error("Stock for product %s was not restored", item["product_id"])
            failed.append({"product_id": item["product_id"], "name": item["name"], "quantity": item["quantity"]})
    if failed:
        raise PartialStockUpdateError("Stock was partially updated and needs manual correction", failed)


def reserve_stock(db, order_items: List[dict]) -> None:
    """Decrement stock for every line item, or for none of them."""
    applied = []
    try:
        for item in order_items:
            _take_stock(db, item)
            applied.append(item)
    except (StockError, PyMongoError):
        if applied:
            logger.warning("Rolling back stock for %d line items", len(applied))
        _restore_stock(db, applied)
        raise


def verify_payment(db, order_id: str, user_id: str, transaction_id: Optional[str], upi_id: Optional[str] = None) -> dict:
    oid = to_obj_id(order_id)
    order = db["order"].find_one({"_id": oid}) if oid is not None else None
    if not order:
        raise NotFound("Order not found")
    if order.get("user_id") != user_id:
        raise Forbidden("Not authorized to update this order")

    # Claim the order so one verification runs per order
    claimed = db["order"].find_one_and_update(
        {
            "_id": oid,
            "order_status": "Processing",
            "payment_details.payment_status": "Pending",
            "verifying": {"$ne": True},
        },
        {"$set": {"verifying": True}},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        raise ValidationFailed("Order has already been processed")

    # The claim is dropped on every exit except a settled order or stock that
    # could not be restored; the latter stays claimed for manual correction.
    settled = False
    keep_claim = False
    try:
        now = datetime.now(timezone.utc)
        if not is_valid_transaction(transaction_id):
            db["order"].update_one(
                {"_id": oid},
                {
                    "$set": {"payment_details.payment_status": "Failed", "order_status": "Cancelled", "updated_at": now},
                    "$unset": {"verifying": ""},
                },
            )
            settled = True
            logger.warning("Payment rejected for order %s", order_id)
            raise PaymentFailed("Payment verification failed")

        try:
            reserve_stock(db, claimed["order_items"])
        except (StockError, PyMongoError) as exc:
            logger.warning("Stock reservation failed for order %s: %s", order_id, exc)
            raise

        try:
            db["order"].update_one(
                {"_id": oid},
                {
                    "$set": {
                        "payment_details": {
                            "upi_id": upi_id,
                            "transaction_id": transaction_id,
                            "payment_status": "Success",
                            "paid_at": now,
                        },
                        "order_status": "Confirmed",
                        "updated_at": now,
                    },
                    "$unset": {"verifying": ""},
                },
            )
        except PyMongoError:
            logger.exception("Could not confirm order %s, restoring its stock", order_id)
            _restore_stock(db, claimed["order_items"])
            raise
        settled = True
    except PartialStockUpdateError:
        keep_claim = True
        raise
    finally:
        if not settled and not keep_claim:
            db["order"].update_one({"_id": oid}, {"$unset": {"verifying": ""}})

    logger.info("Payment verified, order %s confirmed", order_id)
    return _order_out(db["order"].find_one({"_id": oid}))


def _order_out(doc: dict) -> dict:
    order = serialize_doc(doc)
    order.pop("verifying", None)
    return order


def _attach_users(db, orders: List[dict]) -> List[dict]:
    ids = {to_obj_id(o["user_id"]) for o in orders} - {None}
    users = {str(u["_id"]): u for u in db["user"].find({"_id": {"$in": list(ids)}})}
    for order in orders:
        user = users.get(order["user_id"])
        order["user"] = {"id": order["user_id"], "name": user.get("name"), "email": user.get("email")} if user else None
    return orders


def list_user_orders(db, user_id: str) -> List[dict]:
    docs = get_documents(db, "order", {"user_id": user_id}, sort=[("created_at", DESCENDING)])
    return [_order_out(d) for d in docs]


def get_order(db, order_id: str, user: dict) -> dict:
    oid = to_obj_id(order_id)
    doc = db["order"].find_one({"_id": oid}) if oid is not None else None
    if not doc:
        raise NotFound("Order not found")
    if doc.get("user_id") != user["id"] and not is_privileged(user.get("role")):
        raise Forbidden("Not authorized to view this order")
    return _attach_users(db, [_order_out(doc)])[0]


def list_all_orders(db) -> dict:
    orders = _attach_users(db, [_order_out(d) for d in get_documents(db, "order", sort=[("created_at", DESCENDING)])])
    total_amount = round(sum(float(o.get("total_price", 0)) for o in orders), 2)
    return {"count": len(orders), "total_amount": total_amount, "orders": orders}
