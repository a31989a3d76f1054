"""
Checkout settlement

Recording a payment and clearing the buyer's cart and checkout staging rows
happen as one unit. Two strategies are available:

- ``transaction``: the three writes run inside a MongoDB multi-document
  transaction (replica set or sharded cluster required).
- ``compensate``: the writes run in order and, if cleanup fails, the payment
  insert is undone and any deleted cart/checkout rows are restored.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

from database import CARTS, CHECKOUT, PAYMENTS, to_public
from errors import NotFound, Upstream
from schemas import Payment

logger = logging.getLogger(__name__)


def _session_kw(session) -> Dict[str, Any]:
    return {"session": session} if session is not None else {}


class SettlementWorkflow:
    def __init__(self, db, client=None, mode: str = "transaction"):
        if mode == "transaction" and client is None:
            raise ValueError("transaction mode needs a MongoClient")
        self.db = db
        self.client = client
        self.mode = mode

    def settle(self, payment: Payment) -> Dict[str, Any]:
        logger.info("Settling payment for %s (%s)", payment.userEmail, self.mode)
        try:
            if self.mode == "transaction":
                with self.client.start_session() as session:
                    result = session.with_transaction(lambda s: self._apply(payment, session=s))
            else:
                result = self._apply_with_compensation(payment)
        except DuplicateKeyError:
            # a concurrent settlement with the same transactionId won the insert
            if not payment.transactionId:
                raise
            doc = self.db[PAYMENTS].find_one({"transactionId": payment.transactionId})
            if doc is None:
                raise
            logger.info("Payment %s already settled as %s", payment.transactionId, doc["_id"])
            return self._duplicate(doc)
        logger.info(
            "Settled payment %s for %s: removed %d cart and %d checkout rows",
            result["insertedId"], payment.userEmail, result["deletedCarts"], result["deletedCheckouts"],
        )
        return result

    def _duplicate(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "acknowledged": True,
            "insertedId": str(doc["_id"]),
            "duplicate": True,
            "deletedCarts": 0,
            "deletedCheckouts": 0,
        }

    def _existing(self, payment: Payment, session=None) -> Optional[Dict[str, Any]]:
        if not payment.transactionId:
            return None
        doc = self.db[PAYMENTS].find_one({"transactionId": payment.transactionId}, **_session_kw(session))
        if doc is None:
            return None
        return self._duplicate(doc)

    def _payment_doc(self, payment: Payment) -> Dict[str, Any]:
        doc = payment.model_dump(mode="json")
        if doc.get("transactionId") is None:
            # the unique index only covers payments that carry an id
            doc.pop("transactionId", None)
        now = datetime.now(timezone.utc)
        doc["created_at"] = now
        doc["updated_at"] = now
        return doc

    def _apply(self, payment: Payment, session=None) -> Dict[str, Any]:
        existing = self._existing(payment, session=session)
        if existing:
            return existing
        inserted = self.db[PAYMENTS].insert_one(self._payment_doc(payment), **_session_kw(session))
        owner = {"userEmail": payment.userEmail}
        carts = self.db[CARTS].delete_many(owner, **_session_kw(session))
        checkouts = self.db[CHECKOUT].delete_many(owner, **_session_kw(session))
        return {
            "acknowledged": True,
            "insertedId": str(inserted.inserted_id),
            "duplicate": False,
            "deletedCarts": carts.deleted_count,
            "deletedCheckouts": checkouts.deleted_count,
        }

    def _apply_with_compensation(self, payment: Payment) -> Dict[str, Any]:
        existing = self._existing(payment)
        if existing:
            return existing
        owner = {"userEmail": payment.userEmail}
        cart_rows: List[Dict[str, Any]] = list(self.db[CARTS].find(owner))
        checkout_rows: List[Dict[str, Any]] = list(self.db[CHECKOUT].find(owner))

        inserted = self.db[PAYMENTS].insert_one(self._payment_doc(payment))
        try:
            # only the snapshotted rows, so a rollback restores exactly what was removed
            carts = self.db[CARTS].delete_many({"_id": {"$in": [r["_id"] for r in cart_rows]}})
            checkouts = self.db[CHECKOUT].delete_many({"_id": {"$in": [r["_id"] for r in checkout_rows]}})
        except PyMongoError as e:
            logger.warning("Cleanup failed for payment %s, rolling back: %s", inserted.inserted_id, e)
            self._compensate(inserted.inserted_id, cart_rows, checkout_rows)
            raise Upstream("Payment settlement failed", error=str(e))
        return {
            "acknowledged": True,
            "insertedId": str(inserted.inserted_id),
            "duplicate": False,
            "deletedCarts": carts.deleted_count,
            "deletedCheckouts": checkouts.deleted_count,
        }

    def _compensate(self, payment_id, cart_rows, checkout_rows) -> None:
        self.db[PAYMENTS].delete_one({"_id": payment_id})
        for collection, rows in ((CARTS, cart_rows), (CHECKOUT, checkout_rows)):
            for row in rows:
                self.db[collection].replace_one({"_id": row["_id"]}, row, upsert=True)


def update_payment_status(db, payment_id, status: str) -> Dict[str, Any]:
    result = db[PAYMENTS].update_one(
        {"_id": payment_id},
        {"$set": {"status": status, "updated_at": datetime.now(timezone.utc)}},
    )
    if result.matched_count == 0:
        raise NotFound("Payment not found")
    return {"matched": result.matched_count, "modified": result.modified_count}


def payments_for(db, filter_dict: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [to_public(p) for p in db[PAYMENTS].find(filter_dict).sort("created_at", -1)]
