import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pymongo.errors import DuplicateKeyError

from auth import (
    CredentialVerifier,
    clear_token_cookie,
    current_identity,
    issue_token,
    require_admin,
    require_seller,
    set_token_cookie,
)
from config import Settings
from database import (
    CARTS,
    CATEGORIES,
    CHECKOUT,
    MEDICINES,
    USERS,
    connect,
    create_document,
    ensure_indexes,
    get_client,
    get_db,
    get_documents,
    oid,
    to_public,
)
from errors import Conflict, Forbidden, NotFound, ValidationFailed, register_exception_handlers
from payments import StripePaymentProvider, get_payment_provider, to_minor_units
from schemas import CheckoutRecord, Identity, Medicine, Payment, PaymentStatus, Role, User
from settlement import SettlementWorkflow, payments_for, update_payment_status

logger = logging.getLogger(__name__)


# ---------- Request models ----------

class TokenRequest(BaseModel):
    email: EmailStr


class RegisterRequest(BaseModel):
    name: Optional[str] = None
    email: EmailStr
    role: Literal["buyer", "seller"] = "buyer"


class RoleUpdate(BaseModel):
    role: Role


class MedicineIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    generic_name: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    category: str
    company: Optional[str] = None
    unit: Optional[str] = None
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100)


class AdvertiseRequest(BaseModel):
    advertised: bool = True


class CartIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    medicineId: str
    name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    image: Optional[str] = None
    seller: Optional[EmailStr] = None


class CartUpdate(BaseModel):
    quantity: int = Field(..., ge=0)
    subtotal: float = Field(..., ge=0)
    stock: Optional[int] = Field(None, ge=0)


class CheckoutIn(BaseModel):
    items: List[Dict[str, Any]] = Field(default_factory=list)
    grandTotal: float = Field(0, ge=0)


class CategoryIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    image: Optional[str] = None


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    image: Optional[str] = None


class PaymentIntentRequest(BaseModel):
    price: float = Field(..., gt=0)


class PaymentStatusUpdate(BaseModel):
    status: PaymentStatus


# ---------- Application ----------

def create_app(settings: Optional[Settings] = None, database=None, client=None, payment_provider=None) -> FastAPI:
    """Build the API. Passing ``database`` skips connecting to MongoDB."""
    settings = settings or Settings.from_env()
    if settings.settlement_mode == "transaction" and database is not None and client is None:
        raise ValueError("SETTLEMENT_MODE=transaction needs the MongoClient that owns the injected database")
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_client = None
        if app.state.db is None:
            owned_client, app.state.db = connect(settings)
            app.state.client = owned_client
        ensure_indexes(app.state.db)
        logger.info(
            "MedEasy API ready (database=%s, auth=%s, settlement=%s)",
            settings.database_name, settings.auth_transport, settings.settlement_mode,
        )
        yield
        if owned_client is not None:
            owned_client.close()

    app = FastAPI(title="MedEasy API", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = database
    app.state.client = client
    app.state.verifier = CredentialVerifier(settings)
    app.state.payment_provider = payment_provider or StripePaymentProvider(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    register_routes(app)
    return app


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_settlement(request: Request, db=Depends(get_db), client=Depends(get_client)) -> SettlementWorkflow:
    settings = request.app.state.settings
    return SettlementWorkflow(db, client=client, mode=settings.settlement_mode)


def _update_one(db, collection: str, query, fields: Dict[str, Any], missing: str) -> Dict[str, Any]:
    fields["updated_at"] = datetime.now(timezone.utc)
    res = db[collection].update_one(query, {"$set": fields})
    if res.matched_count == 0:
        raise NotFound(missing)
    return {"matched": res.matched_count, "modified": res.modified_count}


# ---------- Routes ----------

def register_routes(app: FastAPI) -> None:

    @app.get("/")
    def read_root():
        return {"message": "Hello from MedEasy Server.."}

    @app.get("/test")
    def test_database(db=Depends(get_db)):
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "collections": [],
        }
        try:
            if db is not None:
                response["database"] = "✅ Connected & Working"
                response["collections"] = db.list_collection_names()[:10]
        except Exception as e:
            response["database"] = f"❌ Error: {str(e)[:50]}"
        return response

    # Auth
    @app.post("/jwt")
    def create_token(payload: TokenRequest, response: Response, settings: Settings = Depends(get_settings)):
        token = issue_token(payload.email, settings)
        set_token_cookie(response, token, settings)
        return {"success": True, "token": token}

    @app.get("/logout")
    def logout(response: Response, settings: Settings = Depends(get_settings)):
        clear_token_cookie(response, settings)
        return {"success": True}

    # Users
    @app.post("/user")
    def save_user(payload: RegisterRequest, db=Depends(get_db)):
        if db[USERS].find_one({"email": payload.email}):
            return {"message": "User already exists"}
        user = User(name=payload.name, email=payload.email, role=payload.role)
        try:
            user_id = create_document(db, USERS, user)
        except DuplicateKeyError:
            return {"message": "User already exists"}
        return {"id": user_id, **user.model_dump()}

    @app.get("/users")
    def list_users(db=Depends(get_db), admin: Identity = Depends(require_admin)):
        return get_documents(db, USERS)

    @app.get("/users/role/{email}")
    def get_user_role(email: str, db=Depends(get_db), identity: Identity = Depends(current_identity)):
        try:
            requested = Identity(email=email).email
        except ValueError:
            raise ValidationFailed("Invalid email")
        user = db[USERS].find_one({"email": identity.email})
        role = user.get("role") if user else None
        if requested != identity.email:
            raise Forbidden(role=role)
        return {"role": role}

    @app.patch("/users/role/{user_id}")
    def update_user_role(user_id: str, payload: RoleUpdate, db=Depends(get_db), admin: Identity = Depends(require_admin)):
        return _update_one(db, USERS, {"_id": oid(user_id)}, {"role": payload.role}, "User not found")

    # Medicines
    @app.post("/medicines")
    def create_medicine(payload: MedicineIn, db=Depends(get_db), seller: Identity = Depends(require_seller)):
        data = payload.model_dump()
        data.update(seller=seller.email, requested=False, advertised=False)
        doc = Medicine(**data).model_dump()
        medicine_id = create_document(db, MEDICINES, doc)
        return {"id": medicine_id, **doc}

    @app.get("/medicines")
    def list_medicines(seller: Optional[str] = None, category: Optional[str] = None, db=Depends(get_db)):
        query: Dict[str, Any] = {}
        if seller:
            query["seller"] = seller
        if category:
            query["category"] = category
        return get_documents(db, MEDICINES, query)

    @app.get("/medicines/requested")
    def requested_medicines(db=Depends(get_db), admin: Identity = Depends(require_admin)):
        return get_documents(db, MEDICINES, {"requested": True})

    @app.get("/medicines/advertised")
    def advertised_medicines(db=Depends(get_db)):
        return get_documents(db, MEDICINES, {"advertised": True})

    @app.get("/medicines/discounted")
    def discounted_medicines(db=Depends(get_db)):
        return get_documents(db, MEDICINES, {"discount": {"$gt": 0}})

    @app.get("/medicines/category/{category}")
    def medicines_by_category(category: str, db=Depends(get_db)):
        return get_documents(db, MEDICINES, {"category": category})

    @app.get("/medicines/{medicine_id}")
    def get_medicine(medicine_id: str, db=Depends(get_db)):
        doc = db[MEDICINES].find_one({"_id": oid(medicine_id)})
        if not doc:
            raise NotFound("Medicine not found")
        return to_public(doc)

    @app.patch("/medicines/request/{medicine_id}")
    def request_advertisement(medicine_id: str, db=Depends(get_db), seller: Identity = Depends(require_seller)):
        _id = oid(medicine_id)
        medicine = db[MEDICINES].find_one({"_id": _id})
        if not medicine:
            raise NotFound("Medicine not found")
        if medicine.get("seller") != seller.email:
            raise Forbidden("Not your medicine", role="seller")
        return _update_one(db, MEDICINES, {"_id": _id}, {"requested": True}, "Medicine not found")

    @app.patch("/medicines/advertise/{medicine_id}")
    def advertise_medicine(medicine_id: str, payload: Optional[AdvertiseRequest] = None, db=Depends(get_db), admin: Identity = Depends(require_admin)):
        if payload is not None and not payload.advertised:
            raise ValidationFailed("Advertising cannot be withdrawn")
        return _update_one(db, MEDICINES, {"_id": oid(medicine_id)}, {"advertised": True}, "Medicine not found")

    # Cart
    @app.post("/carts")
    def add_to_cart(payload: CartIn, db=Depends(get_db), identity: Identity = Depends(current_identity)):
        owner = {"medicineId": payload.medicineId, "userEmail": identity.email}
        if db[CARTS].find_one(owner):
            raise Conflict("Already in cart")
        item = {**payload.model_dump(exclude_none=True), **owner, "quantity": 0, "subtotal": 0}
        try:
            item_id = create_document(db, CARTS, item)
        except DuplicateKeyError:
            raise Conflict("Already in cart")
        return {"id": item_id, **item}

    @app.get("/carts")
    def get_cart(db=Depends(get_db), identity: Identity = Depends(current_identity)):
        return get_documents(db, CARTS, {"userEmail": identity.email})

    @app.patch("/carts/{item_id}")
    def update_cart_item(item_id: str, payload: CartUpdate, db=Depends(get_db), identity: Identity = Depends(current_identity)):
        return _update_one(
            db, CARTS,
            {"_id": oid(item_id), "userEmail": identity.email},
            payload.model_dump(exclude_none=True),
            "Cart item not found",
        )

    @app.delete("/carts/{item_id}")
    def remove_cart_item(item_id: str, db=Depends(get_db), identity: Identity = Depends(current_identity)):
        res = db[CARTS].delete_one({"_id": oid(item_id), "userEmail": identity.email})
        if res.deleted_count == 0:
            raise NotFound("Cart item not found")
        return {"deleted": res.deleted_count}

    @app.delete("/carts")
    def clear_cart(db=Depends(get_db), identity: Identity = Depends(current_identity)):
        res = db[CARTS].delete_many({"userEmail": identity.email})
        return {"deleted": res.deleted_count}

    # Checkout
    @app.post("/checkout")
    def save_checkout(payload: CheckoutIn, db=Depends(get_db), identity: Identity = Depends(current_identity)):
        record = CheckoutRecord(userEmail=identity.email, items=payload.items, grandTotal=payload.grandTotal)
        record_id = create_document(db, CHECKOUT, record)
        return {"id": record_id, **record.model_dump()}

    @app.get("/checkout")
    def get_checkout(db=Depends(get_db), identity: Identity = Depends(current_identity)):
        return get_documents(db, CHECKOUT, {"userEmail": identity.email})

    # Categories
    @app.post("/categories")
    def create_category(payload: CategoryIn, db=Depends(get_db), admin: Identity = Depends(require_admin)):
        doc = payload.model_dump(exclude_none=True)
        category_id = create_document(db, CATEGORIES, doc)
        return {"id": category_id, **doc}

    @app.get("/categories")
    def list_categories(db=Depends(get_db)):
        return get_documents(db, CATEGORIES)

    @app.patch("/categories/{category_id}")
    def update_category(category_id: str, payload: CategoryUpdate, db=Depends(get_db), admin: Identity = Depends(require_admin)):
        updates = payload.model_dump(exclude_none=True)
        if not updates:
            raise ValidationFailed("Nothing to update")
        return _update_one(db, CATEGORIES, {"_id": oid(category_id)}, updates, "Category not found")

    @app.delete("/categories/{category_id}")
    def delete_category(category_id: str, db=Depends(get_db), admin: Identity = Depends(require_admin)):
        res = db[CATEGORIES].delete_one({"_id": oid(category_id)})
        if res.deleted_count == 0:
            raise NotFound("Category not found")
        return {"deleted": res.deleted_count}

    # Payments
    @app.post("/create-payment-intent")
    def create_payment_intent(payload: PaymentIntentRequest, provider=Depends(get_payment_provider), identity: Identity = Depends(current_identity)):
        intent = provider.create_intent(to_minor_units(payload.price))
        return {"clientSecret": intent["clientSecret"]}

    @app.post("/payments")
    def create_payment(payload: Payment, workflow: SettlementWorkflow = Depends(get_settlement), identity: Identity = Depends(current_identity)):
        if payload.userEmail != identity.email:
            raise Forbidden("Cannot pay on behalf of another user")
        return workflow.settle(payload)

    @app.get("/payments")
    def list_payments(db=Depends(get_db), admin: Identity = Depends(require_admin)):
        return payments_for(db, {})

    @app.get("/payments/mine")
    def my_payments(db=Depends(get_db), identity: Identity = Depends(current_identity)):
        return payments_for(db, {"userEmail": identity.email})

    @app.get("/payments/seller")
    def seller_payments(db=Depends(get_db), seller: Identity = Depends(require_seller)):
        return payments_for(db, {"items.seller": seller.email})

    @app.patch("/payments/{payment_id}")
    def update_payment(payment_id: str, payload: PaymentStatusUpdate, db=Depends(get_db), admin: Identity = Depends(require_admin)):
        return update_payment_status(db, oid(payment_id), payload.status)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 4000))
    uvicorn.run(app, host="0.0.0.0", port=port)
