import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError

import checkout
import config
import database
from auth import create_token, get_current_user, hash_password, public_user, require_admin, verify_password
from database import create_document, ensure_indexes, get_db, get_documents, serialize_doc, to_obj_id
from errors import NotAuthenticated, NotFound, ValidationFailed, install_error_handlers
from schemas import OrderItem, Product as ProductSchema, Role, ShippingAddress, User as UserSchema

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)


# ----------------------- Models -----------------------
class RegisterBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    username: Optional[str] = None


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdateBody(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    password: Optional[str] = Field(None, min_length=6)


class ProductCreateBody(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    category: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1)
    stock: int = Field(0, ge=0)


class ProductUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    category: Optional[str] = None
    image: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)


class UserCreateBody(BaseModel):
    username: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Role = "user"
    phone: str = ""
    address: str = ""


class UserUpdateBody(BaseModel):
    username: Optional[str] = Field(None, min_length=1)
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(None, min_length=6)
    role: Optional[Role] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class CartItemBody(BaseModel):
    product_id: str
    name: Optional[str] = None
    quantity: int = Field(..., ge=1)


class ValidateStockBody(BaseModel):
    cart_items: List[CartItemBody] = Field(..., min_length=1)


class CreateOrderBody(BaseModel):
    order_items: List[OrderItem] = []
    shipping_address: ShippingAddress
    items_price: float = Field(..., ge=0)
    tax_price: float = Field(..., ge=0)
    shipping_price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)


class VerifyPaymentBody(BaseModel):
    transaction_id: Optional[str] = None
    upi_id: Optional[str] = None


# ----------------------- Helpers -----------------------
def _get_or_404(db, collection: str, doc_id: str, label: str) -> dict:
    oid = to_obj_id(doc_id)
    doc = db[collection].find_one({"_id": oid}) if oid is not None else None
    if not doc:
        raise NotFound(f"{label} not found")
    return doc


def _ensure_unique_account(db, email: Optional[str] = None, username: Optional[str] = None, exclude_id=None):
    clauses = []
    if email:
        clauses.append({"email": email})
    if username:
        clauses.append({"username": username})
    if not clauses:
        return
    filt = {"$or": clauses}
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    if db["user"].find_one(filt):
        raise ValidationFailed("User with this email or username already exists")


def _insert_user(db, user: UserSchema) -> str:
    try:
        return create_document(db, "user", user)
    except DuplicateKeyError:
        raise ValidationFailed("User with this email or username already exists")


def _session(user: dict) -> dict:
    return {
        "id": user["id"],
        "username": user.get("username"),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role"),
    }


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"success": True, "message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if config.DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/auth/register", status_code=201)
def register(body: RegisterBody, db=Depends(get_db)):
    email = str(body.email).lower()
    username = body.username or email
    _ensure_unique_account(db, email=email, username=username)
    user_id = _insert_user(
        db,
        UserSchema(username=username, name=body.name, email=email, password_hash=hash_password(body.password)),
    )
    user = public_user(db["user"].find_one({"_id": to_obj_id(user_id)}))
    logger.info("Registered user %s", user_id)
    return {
        "success": True,
        "message": "User registered successfully",
        "token": create_token({"id": user_id}),
        "user": _session(user),
    }


@app.post("/auth/login")
def login(body: LoginBody, db=Depends(get_db)):
    doc = db["user"].find_one({"email": str(body.email).lower()})
    if not doc or not verify_password(body.password, doc.get("password_hash", "")):
        logger.warning("Failed login for %s", body.email)
        raise NotAuthenticated("Invalid credentials")
    user = public_user(doc)
    return {
        "success": True,
        "message": "Login successful",
        "token": create_token({"id": user["id"]}),
        "user": _session(user),
    }


@app.get("/auth/me")
def me(user=Depends(get_current_user)):
    return {"success": True, "user": {**_session(user), "created_at": user.get("created_at")}}


@app.put("/auth/me")
def update_me(body: ProfileUpdateBody, user=Depends(get_current_user), db=Depends(get_db)):
    update = body.model_dump(exclude_none=True, exclude={"password"})
    if body.password:
        update["password_hash"] = hash_password(body.password)
    update["updated_at"] = datetime.now(timezone.utc)
    db["user"].update_one({"_id": to_obj_id(user["id"])}, {"$set": update})
    return {"success": True, "user": public_user(db["user"].find_one({"_id": to_obj_id(user["id"])}))}


# ----------------------- Products -----------------------
@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, db=Depends(get_db)):
    filt = {}
    if q:
        filt["name"] = {"$regex": q, "$options": "i"}
    if category:
        filt["category"] = category
    products = [serialize_doc(p) for p in get_documents(db, "product", filt)]
    return {"success": True, "count": len(products), "products": products}


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return {"success": True, "product": serialize_doc(_get_or_404(db, "product", product_id, "Product"))}


@app.post("/products", status_code=201)
def create_product(body: ProductCreateBody, user=Depends(require_admin), db=Depends(get_db)):
    product = ProductSchema(**body.model_dump(), created_by=user["id"])
    pid = create_document(db, "product", product)
    return {
        "success": True,
        "message": "Product created successfully",
        "product": serialize_doc(db["product"].find_one({"_id": to_obj_id(pid)})),
    }


@app.put("/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, user=Depends(require_admin), db=Depends(get_db)):
    doc = _get_or_404(db, "product", product_id, "Product")
    update = body.model_dump(exclude_none=True)
    update["updated_at"] = datetime.now(timezone.utc)
    db["product"].update_one({"_id": doc["_id"]}, {"$set": update})
    return {
        "success": True,
        "message": "Product updated successfully",
        "product": serialize_doc(db["product"].find_one({"_id": doc["_id"]})),
    }


@app.delete("/products/{product_id}")
def delete_product(product_id: str, user=Depends(require_admin), db=Depends(get_db)):
    doc = _get_or_404(db, "product", product_id, "Product")
    db["product"].delete_one({"_id": doc["_id"]})
    return {"success": True, "message": "Product deleted successfully"}


# ----------------------- Admin: users -----------------------
@app.get("/admin/users")
def admin_list_users(user=Depends(require_admin), db=Depends(get_db)):
    users = [public_user(u) for u in get_documents(db, "user")]
    return {"success": True, "count": len(users), "users": users}


@app.post("/admin/users", status_code=201)
def admin_create_user(body: UserCreateBody, user=Depends(require_admin), db=Depends(get_db)):
    email = str(body.email).lower()
    _ensure_unique_account(db, email=email, username=body.username)
    data = body.model_dump(exclude={"password"})
    data["email"] = email
    user_id = _insert_user(db, UserSchema(**data, password_hash=hash_password(body.password)))
    return {
        "success": True,
        "message": "User created successfully",
        "user": public_user(db["user"].find_one({"_id": to_obj_id(user_id)})),
    }


@app.get("/admin/users/{user_id}")
def admin_get_user(user_id: str, user=Depends(require_admin), db=Depends(get_db)):
    return {"success": True, "user": public_user(_get_or_404(db, "user", user_id, "User"))}


@app.put("/admin/users/{user_id}")
def admin_update_user(user_id: str, body: UserUpdateBody, user=Depends(require_admin), db=Depends(get_db)):
    doc = _get_or_404(db, "user", user_id, "User")
    update = body.model_dump(exclude_none=True, exclude={"password"})
    if "email" in update:
        update["email"] = str(update["email"]).lower()
    _ensure_unique_account(db, email=update.get("email"), username=update.get("username"), exclude_id=doc["_id"])
    if body.password:
        update["password_hash"] = hash_password(body.password)
    update["updated_at"] = datetime.now(timezone.utc)
    try:
        db["user"].update_one({"_id": doc["_id"]}, {"$set": update})
    except DuplicateKeyError:
        raise ValidationFailed("User with this email or username already exists")
    return {
        "success": True,
        "message": "User updated successfully",
        "user": public_user(db["user"].find_one({"_id": doc["_id"]})),
    }


@app.delete("/admin/users/{user_id}")
def admin_delete_user(user_id: str, user=Depends(require_admin), db=Depends(get_db)):
    doc = _get_or_404(db, "user", user_id, "User")
    if str(doc["_id"]) == user["id"]:
        raise ValidationFailed("You cannot delete your own account")
    db["user"].delete_one({"_id": doc["_id"]})
    logger.info("User %s deleted by %s", user_id, user["id"])
    return {"success": True, "message": "User deleted successfully"}


# ----------------------- Orders -----------------------
@app.post("/orders/validate-stock")
def validate_stock(body: ValidateStockBody, user=Depends(get_current_user), db=Depends(get_db)):
    items = checkout.validate_stock(db, [i.model_dump() for i in body.cart_items])
    return {"success": True, "message": "All items are available", "cart_items": items}


@app.post("/orders/create", status_code=201)
def create_order(body: CreateOrderBody, user=Depends(get_current_user), db=Depends(get_db)):
    order = checkout.create_order(
        db,
        user["id"],
        [i.model_dump() for i in body.order_items],
        body.shipping_address.model_dump(),
        body.model_dump(include={"items_price", "tax_price", "shipping_price", "total_price"}),
    )
    return {"success": True, "message": "Order created successfully", "order": order}


@app.put("/orders/verify-payment/{order_id}")
def verify_payment(order_id: str, body: VerifyPaymentBody, user=Depends(get_current_user), db=Depends(get_db)):
    order = checkout.verify_payment(db, order_id, user["id"], body.transaction_id, body.upi_id)
    return {"success": True, "message": "Payment verified and order confirmed", "order": order}


@app.get("/orders/my-orders")
def my_orders(user=Depends(get_current_user), db=Depends(get_db)):
    orders = checkout.list_user_orders(db, user["id"])
    return {"success": True, "count": len(orders), "orders": orders}


@app.get("/orders/admin/all")
def all_orders(user=Depends(require_admin), db=Depends(get_db)):
    return {"success": True, **checkout.list_all_orders(db)}


@app.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return {"success": True, "order": checkout.get_order(db, order_id, user)}


# ----------------------- Seed Demo Data -----------------------
DEMO_PRODUCTS = [
    {
        "name": "Wireless Earbuds",
        "description": "Bluetooth 5.3 earbuds with 24h battery case.",
        "price": 2499,
        "category": "Electronics",
        "image": "https://images.unsplash.com/photo-1590658268037-6bf12165a8df",
        "stock": 40,
    },
    {
        "name": "Smartwatch",
        "description": "Track fitness and notifications.",
        "price": 6999,
        "category": "Electronics",
        "image": "https://images.unsplash.com/photo-1512086734732-172b66a17c72",
        "stock": 25,
    },
    {
        "name": "Mechanical Keyboard",
        "description": "Hot-swappable RGB keyboard.",
        "price": 7999,
        "category": "Accessories",
        "image": "https://images.unsplash.com/photo-1516382799247-87df95d790b5",
        "stock": 30,
    },
    {
        "name": "Cotton T-Shirt",
        "description": "Everyday crew neck tee.",
        "price": 599,
        "category": "Fashion",
        "image": "https://images.unsplash.com/photo-1521572163474-6864f9cf17ab",
        "stock": 100,
    },
    {
        "name": "Casual Sneakers",
        "description": "Comfortable everyday wear.",
        "price": 4999,
        "category": "Fashion",
        "image": "https://images.unsplash.com/photo-1525966222134-fcfa99b8ae77",
        "stock": 0,
    },
]


@app.post("/seed")
def seed(db=Depends(get_db)):
    seeded = False
    if db["product"].count_documents({}) == 0:
        for p in DEMO_PRODUCTS:
            create_document(db, "product", ProductSchema(**p))
        seeded = True
    admin_created = False
    if config.ADMIN_EMAIL and config.ADMIN_PASSWORD and not db["user"].find_one({"email": config.ADMIN_EMAIL.lower()}):
        admin = UserSchema(
            username="admin",
            name="Admin User",
            email=config.ADMIN_EMAIL.lower(),
            password_hash=hash_password(config.ADMIN_PASSWORD),
            role="admin",
        )
        _insert_user(db, admin)
        admin_created = True
    return {
        "success": True,
        "seeded": seeded,
        "admin_created": admin_created,
        "products": db["product"].count_documents({}),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
