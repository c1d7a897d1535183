import hashlib
from typing import Any, Dict, List

import structlog
from bson import ObjectId
from fastapi import BackgroundTasks, Body, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, ValidationError
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import database
from auctions import AuctionBiddingService
from cart import CartAggregator
from config import get_settings
from database import create_document, get_documents, parse_object_id, serialize_doc, utcnow
from errors import ConcurrentUpdate, InvalidBuyType, InvalidCategory, MarketplaceError, ValidationFailed
from logging_config import add_context, clear_context, configure_logging
from notifications import NotificationDispatcher
from orders import OrderLifecycleManager, create_order, orders_for_customer, orders_for_farmer
from schemas import (
    CATEGORIES,
    TOOL_CATEGORIES,
    AuctionProduct,
    BuyType,
    DirectBuyProduct,
    EnquiryProduct,
    Order as OrderSchema,
    Tool as ToolSchema,
    User as UserSchema,
    product_adapter,
)

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="AgriConnect API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Auction state belongs to the bidding service; generic updates may not touch it
AUCTION_STATE_FIELDS = ("current_price", "highest_bidder", "bids", "last_bid_at")

# ----------------------
# Helpers
# ----------------------

def oid(s: str) -> ObjectId:
    _id = parse_object_id(s)
    if _id is None:
        raise HTTPException(status_code=400, detail="Invalid id format")
    return _id


def hash_password(pw: str) -> str:
    return hashlib.sha256(pw.encode()).hexdigest()


def get_db() -> Database:
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return database.db


def get_bidding_service(db: Database = Depends(get_db)) -> AuctionBiddingService:
    return AuctionBiddingService(db)


def get_cart_aggregator(db: Database = Depends(get_db)) -> CartAggregator:
    return CartAggregator(db)


def get_order_manager(db: Database = Depends(get_db)) -> OrderLifecycleManager:
    return OrderLifecycleManager(db, NotificationDispatcher(db), get_settings().order_status_policy)


# ----------------------
# Error handling
# ----------------------

@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    clear_context()
    add_context(method=request.method, path=request.url.path)
    return await call_next(request)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    logger.info("Request rejected", error=type(exc).__name__, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _field_name(loc) -> str:
    tags = {b.value for b in BuyType}
    parts = [str(p) for p in loc[1:] if not isinstance(p, int) and p not in tags]
    return ".".join(parts)


def _translate_validation_errors(request: Request, errors: List[Dict[str, Any]]) -> MarketplaceError:
    for err in errors:
        if err["type"] == "union_tag_invalid":
            return InvalidBuyType(err.get("ctx", {}).get("tag"), [b.value for b in BuyType])
        if err["type"] == "literal_error" and err["loc"][-1] == "category":
            valid = TOOL_CATEGORIES if request.url.path.startswith("/api/tools") else CATEGORIES
            return InvalidCategory(err.get("input"), valid)

    fields = []
    for err in errors:
        name = "buy_type" if err["type"] == "union_tag_not_found" else _field_name(err["loc"])
        if name and name not in fields:
            fields.append(name)
    if errors and all(err["type"] in ("missing", "union_tag_not_found") for err in errors):
        return ValidationFailed(fields, f"Missing required fields: {', '.join(fields)}")
    messages = "; ".join(err["msg"] for err in errors)
    return ValidationFailed(fields, f"Validation failed: {messages}")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    error = _translate_validation_errors(request, exc.errors())
    logger.info("Request validation failed", detail=error.message)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error", error=str(exc), exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Database error"})


# ----------------------
# Schema endpoint for tooling
# ----------------------
@app.get("/schema")
def get_schema():
    def model_fields(model) -> Dict[str, Any]:
        return {name: str(field.annotation) for name, field in model.model_fields.items()}

    return {
        "user": model_fields(UserSchema),
        "product": {
            BuyType.DIRECT_BUY.value: model_fields(DirectBuyProduct),
            BuyType.ENQUIRY.value: model_fields(EnquiryProduct),
            BuyType.AUCTION.value: model_fields(AuctionProduct),
        },
        "order": model_fields(OrderSchema),
        "tool": model_fields(ToolSchema),
    }

# ----------------------
# Health & test
# ----------------------
@app.get("/")
def read_root():
    return {"message": "AgriConnect API running"}

@app.get("/test")
def test_database():
    settings = get_settings()
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.database_url else "❌ Not Set",
        "database_name": "✅ Set" if settings.database_name else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response

# ----------------------
# Auth routes
# ----------------------
class SignUpBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)

@app.post("/api/auth/signup", status_code=201)
def signup(body: SignUpBody, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": body.email}):
        raise HTTPException(status_code=400, detail="User with this email already exists")
    user = UserSchema(name=body.name, email=body.email, password_hash=hash_password(body.password))
    user_id = create_document("user", user, db)
    logger.info("User signed up", user_id=user_id)
    return {"id": user_id, "name": body.name, "email": body.email}

class LoginBody(BaseModel):
    email: EmailStr
    password: str

@app.post("/api/auth/login")
def login(body: LoginBody, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": body.email})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if user.get("password_hash") != hash_password(body.password):
        raise HTTPException(status_code=401, detail="Invalid password")
    s = serialize_doc(user)
    return {"id": s["id"], "name": s.get("name"), "email": s.get("email")}

# ----------------------
# Products
# ----------------------
def _validate_product(data: Dict[str, Any]):
    try:
        return product_adapter.validate_python(data)
    except ValidationError as e:
        raise RequestValidationError([{**err, "loc": ("body", *err["loc"])} for err in e.errors()])

@app.post("/api/products", status_code=201)
def create_product(data: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    # A new auction always opens at its starting bid
    product = _validate_product({k: v for k, v in data.items() if k not in AUCTION_STATE_FIELDS})
    product_id = create_document("product", product, db)
    logger.info("Product listed", product_id=product_id, buy_type=product.buy_type, farmer=product.farmer)
    return serialize_doc(db["product"].find_one({"_id": ObjectId(product_id)}))

@app.get("/api/products")
def list_products(db: Database = Depends(get_db)):
    return [serialize_doc(d) for d in get_documents("product", limit=40, database=db)]

@app.get("/api/animal-products")
def list_animal_products(db: Database = Depends(get_db)):
    return [serialize_doc(d) for d in get_documents("product", {"category": "Animal"}, 40, db)]

@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    doc = db["product"].find_one({"_id": oid(product_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize_doc(doc)

@app.put("/api/products/{product_id}")
def update_product(product_id: str, changes: Dict[str, Any] = Body(...), db: Database = Depends(get_db)):
    _id = oid(product_id)
    existing = db["product"].find_one({"_id": _id})
    if not existing:
        raise HTTPException(status_code=404, detail="Product not found")

    changes = {k: v for k, v in changes.items() if k not in AUCTION_STATE_FIELDS and k not in ("id", "_id")}
    merged = {k: v for k, v in existing.items() if k != "_id"}
    merged.update(changes)
    product = _validate_product(merged)

    fields = product.model_dump()
    guard: Dict[str, Any] = {"_id": _id}
    keep_state = product.buy_type == BuyType.AUCTION.value and existing.get("buy_type") == BuyType.AUCTION.value
    if keep_state:
        for k in AUCTION_STATE_FIELDS:
            fields.pop(k, None)
        if product.starting_bid != existing.get("starting_bid"):
            if existing.get("bids"):
                raise ValidationFailed(["starting_bid"], "Starting bid cannot change once bids have been placed")
            # No bids yet, so the auction still opens at its starting bid
            fields["current_price"] = product.starting_bid
            guard["bids"] = {"$size": 0}
    fields["updated_at"] = utcnow()

    # Switching variant drops the fields only the old variant carried
    protected = {"_id", "created_at", *(AUCTION_STATE_FIELDS if keep_state else ())}
    stale = {k: "" for k in existing if k not in fields and k not in protected}
    update: Dict[str, Any] = {"$set": fields}
    if stale:
        update["$unset"] = stale
    doc = db["product"].find_one_and_update(guard, update, return_document=ReturnDocument.AFTER)
    if not doc:
        if len(guard) > 1 and db["product"].find_one({"_id": _id}, {"_id": 1}):
            raise ConcurrentUpdate("A bid was placed while the listing was being updated. Please retry.")
        raise HTTPException(status_code=404, detail="Product not found")
    logger.info("Product updated", product_id=product_id, buy_type=product.buy_type)
    return serialize_doc(doc)

@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, db: Database = Depends(get_db)):
    res = db["product"].delete_one({"_id": oid(product_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    logger.info("Product removed", product_id=product_id)
    return {"message": "Product removed successfully"}

class BidBody(BaseModel):
    user_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)

@app.post("/api/products/{product_id}/bids")
def place_bid(product_id: str, body: BidBody, service: AuctionBiddingService = Depends(get_bidding_service)):
    return service.place_bid(product_id, body.user_id, body.amount)

# ----------------------
# Cart
# ----------------------
class CartItemIn(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)

@app.get("/api/users/{user_id}/cart")
def get_cart(user_id: str, cart: CartAggregator = Depends(get_cart_aggregator)):
    return cart.get_cart(user_id)

@app.post("/api/users/{user_id}/cart")
def add_to_cart(user_id: str, body: CartItemIn, cart: CartAggregator = Depends(get_cart_aggregator)):
    return cart.add_item(user_id, body.product_id, body.quantity)

@app.delete("/api/users/{user_id}/cart/{product_id}")
def remove_from_cart(user_id: str, product_id: str, cart: CartAggregator = Depends(get_cart_aggregator)):
    return cart.remove_item(user_id, product_id)

@app.delete("/api/users/{user_id}/cart")
def clear_cart(user_id: str, cart: CartAggregator = Depends(get_cart_aggregator)):
    return cart.clear_cart(user_id)

# ----------------------
# Orders
# ----------------------
@app.post("/api/orders", status_code=201)
def place_order(body: OrderSchema, db: Database = Depends(get_db)):
    order = create_order(db, body)
    return {"message": "Order created successfully", "order": order}

@app.get("/api/orders/myorders/{customer_name}")
def my_orders(customer_name: str, db: Database = Depends(get_db)):
    return orders_for_customer(db, customer_name)

class OrderStatusBody(BaseModel):
    status: str

@app.put("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    body: OrderStatusBody,
    background_tasks: BackgroundTasks,
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    order = manager.set_status(order_id, body.status, background_tasks.add_task)
    return {"message": "Order status updated successfully", "order": order}

# ----------------------
# Farmer dashboard
# ----------------------
@app.get("/api/dashboard/products/{farmer_name}")
def farmer_products(farmer_name: str, db: Database = Depends(get_db)):
    return [serialize_doc(d) for d in get_documents("product", {"farmer": farmer_name}, database=db)]

@app.get("/api/dashboard/orders/{farmer_name}")
def farmer_orders(farmer_name: str, db: Database = Depends(get_db)):
    return orders_for_farmer(db, farmer_name)

# ----------------------
# Tool rentals
# ----------------------
def _with_lister(db: Database, tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = {parse_object_id(t.get("listed_by")) for t in tools} - {None}
    names = {str(u["_id"]): u.get("name") for u in db["user"].find({"_id": {"$in": list(ids)}}, {"name": 1})}
    out = []
    for t in tools:
        s = serialize_doc(t)
        lister = s.get("listed_by")
        s["listed_by"] = {"id": lister, "name": names.get(lister)} if lister in names else None
        out.append(s)
    return out

@app.get("/api/tools")
def list_tools(db: Database = Depends(get_db)):
    return _with_lister(db, get_documents("tool", limit=40, database=db))

@app.post("/api/tools", status_code=201)
def create_tool(body: ToolSchema, db: Database = Depends(get_db)):
    tool_id = create_document("tool", body, db)
    return serialize_doc(db["tool"].find_one({"_id": ObjectId(tool_id)}))

@app.get("/api/tools/{tool_id}")
def get_tool(tool_id: str, db: Database = Depends(get_db)):
    doc = db["tool"].find_one({"_id": oid(tool_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="Tool not found")
    return _with_lister(db, [doc])[0]

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().port)
