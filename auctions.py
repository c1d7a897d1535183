"""
Auction bidding.

A bid is accepted only while the auction window is open and only when it
beats the stored current price. The checks are made once against the product
as read, and again inside the single find_one_and_update that applies the
bid, so two bidders racing on the same product can never both win against
the same price. When the guarded write matches nothing the product is read
again and the rejection is reported against that fresh state.
"""
from typing import Any, Dict

import structlog
from pymongo import ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database

from database import parse_object_id, serialize_doc, utcnow
from errors import AuctionInactive, BidTooLow, ConcurrentUpdate, NotFound, ValidationFailed
from schemas import Bid, BuyType

logger = structlog.get_logger(__name__)

MAX_BID_ATTEMPTS = 3


class AuctionBiddingService:
    def __init__(self, db: Database):
        self.db = db

    @property
    def products(self) -> Collection:
        return self.db["product"]

    def _load_auction(self, product_id: str) -> Dict[str, Any]:
        _id = parse_object_id(product_id)
        doc = self.products.find_one({"_id": _id}) if _id is not None else None
        if not doc or doc.get("buy_type") != BuyType.AUCTION.value:
            raise NotFound("Auction product not found.")
        return doc

    @staticmethod
    def _check_bid(doc: Dict[str, Any], amount: float, now) -> None:
        start = doc.get("auction_start_time")
        end = doc.get("auction_end_time")
        if start is None or end is None or now < start or now > end:
            raise AuctionInactive()
        current_price = doc.get("current_price")
        if current_price is None:
            current_price = doc.get("starting_bid", 0)
        if amount <= current_price:
            raise BidTooLow(current_price)

    def place_bid(self, product_id: str, bidder_id: str, amount: float) -> Dict[str, Any]:
        """Apply a bid and return the updated product.

        Raises NotFound, AuctionInactive or BidTooLow. The stored product is
        left untouched on every failure.
        """
        if amount is None or amount <= 0:
            raise ValidationFailed(["amount"], "Bid amount must be a positive number")

        doc = self._load_auction(product_id)

        for attempt in range(1, MAX_BID_ATTEMPTS + 1):
            now = utcnow()
            self._check_bid(doc, amount, now)

            bid = Bid(bidder=str(bidder_id), amount=amount, timestamp=now)
            updated = self.products.find_one_and_update(
                {
                    "_id": doc["_id"],
                    "buy_type": BuyType.AUCTION.value,
                    "auction_start_time": {"$lte": now},
                    "auction_end_time": {"$gte": now},
                    "current_price": {"$lt": amount},
                    # bid timestamps never go backwards within one product
                    "$or": [{"last_bid_at": None}, {"last_bid_at": {"$lte": now}}],
                },
                {
                    "$set": {
                        "current_price": amount,
                        "highest_bidder": str(bidder_id),
                        "last_bid_at": now,
                        "updated_at": now,
                    },
                    "$push": {"bids": bid.model_dump()},
                },
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                logger.info(
                    "Bid accepted",
                    product_id=str(doc["_id"]),
                    bidder=str(bidder_id),
                    amount=amount,
                    bid_count=len(updated.get("bids", [])),
                )
                return serialize_doc(updated)

            logger.debug(
                "Conditional bid write missed, re-reading product",
                product_id=str(doc["_id"]),
                attempt=attempt,
            )
            doc = self._load_auction(product_id)

        # Every attempt lost on the timestamp guard alone
        logger.warning("Bid abandoned after repeated conflicts", product_id=str(doc["_id"]), amount=amount)
        raise ConcurrentUpdate()
