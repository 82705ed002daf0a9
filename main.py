import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import bcrypt
import jwt
from bson import ObjectId
from fastapi import Depends, FastAPI, File, Form, Header, Response, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import catalog
import payments
from catalog import WITHOUT_PHOTO, InvalidQuery
from database import (
    CATEGORIES,
    ORDERS,
    PRODUCTS,
    USERS,
    create_document,
    db,
    ensure_indexes,
    get_documents,
    to_object_id,
)
from errors import (
    APIError,
    ErrorCode,
    bad_request,
    conflict,
    database_errors,
    forbidden,
    http_exception_handler,
    not_found,
    required,
    unauthorized,
    unhandled_exception_handler,
    validation_exception_handler,
)
from logging_config import configure_logging, get_logger
from schemas import (
    ORDER_STATUSES,
    ROLE_ADMIN,
    Category,
    CategoryRequest,
    ForgotPasswordRequest,
    LoginRequest,
    Order,
    OrderStatusRequest,
    PaymentRequest,
    Photo,
    Product,
    ProductFilterRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    User,
)

configure_logging()
logger = get_logger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
TOKEN_TTL = timedelta(days=7)
MIN_PASSWORD_LENGTH = 6
MAX_IDEMPOTENCY_KEY_LENGTH = 64


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting storefront API")
    try:
        ensure_indexes()
    except PyMongoError:
        logger.exception("Could not create database indexes")
    yield
    logger.info("Shutting down storefront API")


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)


# -------------------- Helpers --------------------

def col(name: str):
    if db is None:
        raise APIError(status.HTTP_500_INTERNAL_SERVER_ERROR, "Database not configured", ErrorCode.SYS_DATABASE_ERROR)
    return db[name]


def doc_to_json(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: doc_to_json(v) for k, v in value.items() if not isinstance(v, bytes)}
    if isinstance(value, list):
        return [doc_to_json(v) for v in value]
    return value


def public_user(user: dict) -> dict:
    return doc_to_json({k: v for k, v in user.items() if k not in ("password", "answer")})


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def check_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode(), hashed.encode())


def create_token(user_doc: dict) -> str:
    payload = {
        "_id": str(user_doc["_id"]),
        "exp": datetime.now(timezone.utc) + TOKEN_TTL,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGO)


def populate_category(products: List[dict]) -> List[dict]:
    ids = list({p["category"] for p in products if isinstance(p.get("category"), ObjectId)})
    categories = {c["_id"]: c for c in col(CATEGORIES).find({"_id": {"$in": ids}})} if ids else {}
    for p in products:
        p["category"] = categories.get(p.get("category"))
    return products


def populate_orders(orders: List[dict]) -> List[dict]:
    """Swap product ids for product records (no photo) and the buyer id for its name."""
    product_ids = list({pid for o in orders for pid in o.get("products", [])})
    buyer_ids = list({o["buyer"] for o in orders if o.get("buyer") is not None})
    products = {p["_id"]: p for p in col(PRODUCTS).find({"_id": {"$in": product_ids}}, WITHOUT_PHOTO)}
    buyers = {u["_id"]: {"_id": u["_id"], "name": u.get("name")}
              for u in col(USERS).find({"_id": {"$in": buyer_ids}}, {"name": 1})}
    for o in orders:
        o["products"] = [products[pid] for pid in o.get("products", []) if pid in products]
        o["buyer"] = buyers.get(o.get("buyer"))
    return orders


# -------------------- Auth dependencies --------------------

def require_sign_in(authorization: Optional[str] = Header(None)) -> dict:
    """Decode the JWT in the Authorization header, raw or with a Bearer prefix."""
    if not authorization:
        raise unauthorized("Authorization token missing", ErrorCode.AUTH_MISSING_TOKEN)
    token = authorization.strip()
    if token.lower().startswith("bearer "):
        token = token.split(" ", 1)[1].strip()
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.PyJWTError:
        raise unauthorized("Token validation failed")
    if to_object_id(claims.get("_id")) is None:
        raise unauthorized("Token validation failed")
    return claims


def require_admin(claims: dict = Depends(require_sign_in)) -> dict:
    with database_errors("Error in admin middleware"):
        user = col(USERS).find_one({"_id": to_object_id(claims["_id"])})
    if not user:
        raise unauthorized("User not found")
    if user.get("role") != ROLE_ADMIN:
        raise forbidden("UnAuthorized Access")
    return user


# -------------------- Health --------------------

@app.get("/")
def root():
    return {"status": "ok", "service": "storefront-api"}


@app.get("/test")
def test_database():
    status_report = {
        "backend": "running",
        "database": "not-configured",
    }
    if db is None:
        return status_report
    try:
        status_report["collections"] = db.list_collection_names()[:10]
        status_report["database"] = "connected"
    except PyMongoError:
        logger.exception("Database health check failed")
        status_report["database"] = "error"
    return status_report


# -------------------- Auth --------------------

_REGISTER_FIELDS = (
    ("name", "Name"),
    ("email", "Email"),
    ("password", "Password"),
    ("phone", "Phone no"),
    ("address", "Address"),
    ("answer", "Answer"),
)


@app.post("/api/v1/auth/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest):
    for field, label in _REGISTER_FIELDS:
        if not getattr(payload, field):
            raise required(f"{label} is Required")

    email = normalize_email(payload.email)
    try:
        user = User(
            name=payload.name,
            email=email,
            password=hash_password(payload.password),
            phone=payload.phone,
            address=payload.address,
            answer=payload.answer,
        )
    except ValidationError:
        raise bad_request("Email is invalid")

    users = col(USERS)
    with database_errors("Error in Registration"):
        if users.find_one({"email": email}):
            raise conflict("Already Register please login")
        try:
            user_id = create_document(USERS, user)
        except DuplicateKeyError:
            raise conflict("Already Register please login")
        saved = users.find_one({"_id": ObjectId(user_id)})

    logger.info("User registered", extra={"user_id": user_id})
    return {"success": True, "message": "User Register Successfully", "user": public_user(saved)}


@app.post("/api/v1/auth/login")
def login(payload: LoginRequest):
    if not payload.email or not payload.password:
        raise bad_request("Invalid email or password", ErrorCode.VAL_REQUIRED_FIELD)

    with database_errors("Error in login"):
        user = col(USERS).find_one({"email": normalize_email(payload.email)})
    if not user or not check_password(payload.password, user.get("password", "")):
        raise unauthorized("Invalid email or password")

    return {
        "success": True,
        "message": "login successfully",
        "user": {
            "_id": str(user["_id"]),
            "name": user.get("name"),
            "email": user.get("email"),
            "phone": user.get("phone"),
            "address": user.get("address"),
            "role": user.get("role", 0),
        },
        "token": create_token(user),
    }


@app.post("/api/v1/auth/forgot-password")
def forgot_password(payload: ForgotPasswordRequest):
    if not payload.email:
        raise required("Email is required")
    if not payload.answer:
        raise required("Answer is required")
    if not payload.newPassword:
        raise required("New Password is required")

    users = col(USERS)
    with database_errors("Something went wrong"):
        user = users.find_one({"email": normalize_email(payload.email), "answer": payload.answer})
        if not user:
            raise not_found("Wrong Email Or Answer")
        users.update_one(
            {"_id": user["_id"]},
            {"$set": {"password": hash_password(payload.newPassword), "updated_at": datetime.now(timezone.utc)}},
        )

    logger.info("Password reset", extra={"user_id": str(user["_id"])})
    return {"success": True, "message": "Password Reset Successfully"}


@app.get("/api/v1/auth/test")
def protected_test(admin: dict = Depends(require_admin)):
    return Response(content="Protected Routes", media_type="text/plain")


@app.get("/api/v1/auth/user-auth")
def user_auth(claims: dict = Depends(require_sign_in)):
    return {"ok": True}


@app.get("/api/v1/auth/admin-auth")
def admin_auth(admin: dict = Depends(require_admin)):
    return {"ok": True}


@app.put("/api/v1/auth/profile")
def update_profile(payload: ProfileUpdateRequest, claims: dict = Depends(require_sign_in)):
    if payload.password and len(payload.password) < MIN_PASSWORD_LENGTH:
        raise bad_request(f"Password should be at least {MIN_PASSWORD_LENGTH} characters long")

    user_id = to_object_id(claims["_id"])
    users = col(USERS)
    with database_errors("Error While Update Profile"):
        user = users.find_one({"_id": user_id})
        if not user:
            raise not_found("User not found")
        update = {
            "name": payload.name or user.get("name"),
            "phone": payload.phone or user.get("phone"),
            "address": payload.address or user.get("address"),
            "updated_at": datetime.now(timezone.utc),
        }
        if payload.password:
            update["password"] = hash_password(payload.password)
        updated = users.find_one_and_update(
            {"_id": user_id}, {"$set": update}, return_document=ReturnDocument.AFTER
        )

    return {"success": True, "message": "Profile Updated Successfully", "updatedUser": public_user(updated)}


@app.get("/api/v1/auth/all-users")
def all_users(admin: dict = Depends(require_admin)):
    with database_errors("Error in fetching users"):
        users = get_documents(USERS)
    return {"success": True, "users": [public_user(u) for u in users]}


# -------------------- Orders --------------------

@app.get("/api/v1/auth/orders")
def buyer_orders(claims: dict = Depends(require_sign_in)):
    with database_errors("Error While Getting Orders"):
        orders = list(col(ORDERS).find({"buyer": to_object_id(claims["_id"])}))
        populate_orders(orders)
    return doc_to_json(orders)


@app.get("/api/v1/auth/all-orders")
def all_orders(admin: dict = Depends(require_admin)):
    with database_errors("Error While Getting Orders"):
        orders = list(col(ORDERS).find({}).sort("created_at", DESCENDING))
        populate_orders(orders)
    return doc_to_json(orders)


@app.put("/api/v1/auth/order-status/{order_id}")
def update_order_status(order_id: str, payload: OrderStatusRequest, admin: dict = Depends(require_admin)):
    # Any status may follow any other; only membership in the enum is checked.
    if payload.status not in ORDER_STATUSES:
        raise bad_request("Invalid status")

    oid = to_object_id(order_id)
    if oid is None:
        raise not_found("Order not found")

    with database_errors("Error While Updating Order"):
        order = col(ORDERS).find_one_and_update(
            {"_id": oid},
            {"$set": {"status": payload.status, "updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
    if not order:
        raise not_found("Order not found")

    logger.info("Order status changed", extra={"order_id": order_id, "status": payload.status})
    return {"success": True, "message": "Order status updated successfully", "order": doc_to_json(order)}


# -------------------- Categories --------------------

def _category_name(payload: CategoryRequest) -> str:
    name = (payload.name or "").strip()
    if not name:
        raise required("Name is required")
    if not catalog.make_slug(name):
        raise bad_request("Name must contain letters or digits")
    return name


@app.post("/api/v1/category/create-category", status_code=status.HTTP_201_CREATED)
def create_category(payload: CategoryRequest, response: Response, admin: dict = Depends(require_admin)):
    name = _category_name(payload)
    categories = col(CATEGORIES)
    already_exists = {"success": True, "message": "Category already exist"}

    with database_errors("Error in category creation"):
        if categories.find_one(catalog.category_lookup_query(name)):
            response.status_code = status.HTTP_200_OK
            return already_exists
        try:
            category_id = create_document(CATEGORIES, Category(name=name, slug=catalog.make_slug(name)))
        except DuplicateKeyError:
            response.status_code = status.HTTP_200_OK
            return already_exists
        category = categories.find_one({"_id": ObjectId(category_id)})

    logger.info("Category created", extra={"category_id": category_id, "slug": category["slug"]})
    return {"success": True, "message": "New category created", "category": doc_to_json(category)}


@app.put("/api/v1/category/update-category/{category_id}")
def update_category(category_id: str, payload: CategoryRequest, admin: dict = Depends(require_admin)):
    name = _category_name(payload)
    oid = to_object_id(category_id)
    if oid is None:
        raise not_found("Category not found")

    categories = col(CATEGORIES)
    with database_errors("Error while updating category"):
        if not categories.find_one({"_id": oid}):
            raise not_found("Category not found")
        if categories.find_one(catalog.category_lookup_query(name, exclude_id=oid)):
            raise conflict("Category already exist")
        try:
            category = categories.find_one_and_update(
                {"_id": oid},
                {"$set": {"name": name, "slug": catalog.make_slug(name), "updated_at": datetime.now(timezone.utc)}},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise conflict("Category already exist")
    if not category:
        raise not_found("Category not found")

    logger.info("Category updated", extra={"category_id": category_id, "slug": category["slug"]})
    return {"success": True, "message": "Category updated successfully", "category": doc_to_json(category)}


@app.get("/api/v1/category/get-category")
def list_categories():
    with database_errors("Error while getting all categories"):
        categories = get_documents(CATEGORIES)
    return {"success": True, "message": "All categories list", "category": doc_to_json(categories)}


@app.get("/api/v1/category/single-category/{slug}")
def single_category(slug: str):
    with database_errors("Error while getting single category"):
        category = col(CATEGORIES).find_one({"slug": slug})
    return {"success": True, "message": "Get single category successfully", "category": doc_to_json(category)}


@app.delete("/api/v1/category/delete-category/{category_id}")
def delete_category(category_id: str, admin: dict = Depends(require_admin)):
    oid = to_object_id(category_id)
    if oid is None:
        raise not_found("Category not found")
    with database_errors("Error while deleting category"):
        result = col(CATEGORIES).delete_one({"_id": oid})
    if result.deleted_count == 0:
        raise not_found("Category not found")

    logger.info("Category deleted", extra={"category_id": category_id})
    return {"success": True, "message": "Category deleted successfully"}


# -------------------- Products --------------------

_PRODUCT_FIELDS = (
    ("name", "Name"),
    ("description", "Description"),
    ("price", "Price"),
    ("category", "Category"),
    ("quantity", "Quantity"),
    ("shipping", "Shipping"),
)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_product_form(form: Dict[str, Optional[str]], partial: bool = False) -> dict:
    values: Dict[str, Any] = {}
    for field, label in _PRODUCT_FIELDS:
        raw = form.get(field)
        if raw is None or not str(raw).strip():
            if not partial:
                raise required(f"{label} is Required")
            continue
        values[field] = str(raw).strip()

    if "price" in values:
        try:
            values["price"] = float(values["price"])
        except ValueError:
            raise bad_request("Price must be a number")
        if values["price"] < 0:
            raise bad_request("Price must not be negative")

    if "quantity" in values:
        try:
            values["quantity"] = int(values["quantity"])
        except ValueError:
            raise bad_request("Quantity must be a whole number")
        if values["quantity"] < 0:
            raise bad_request("Quantity must not be negative")

    if "shipping" in values:
        flag = values["shipping"].lower()
        if flag not in _TRUE | _FALSE:
            raise bad_request("Shipping must be true or false")
        values["shipping"] = flag in _TRUE

    if "category" in values:
        oid = to_object_id(values["category"])
        if oid is None or col(CATEGORIES).find_one({"_id": oid}) is None:
            raise bad_request("Category not found")
        values["category"] = oid

    if "name" in values:
        values["slug"] = catalog.make_slug(values["name"])
        if not values["slug"]:
            raise bad_request("Name must contain letters or digits")
    return values


def _read_photo(photo: Optional[UploadFile]) -> Optional[Photo]:
    if photo is None or not photo.filename:
        return None
    if photo.size is not None and photo.size > catalog.MAX_PHOTO_BYTES:
        raise bad_request("Photo should be less than 1MB")
    # Size can be unknown for streamed parts; never read past the limit.
    data = photo.file.read(catalog.MAX_PHOTO_BYTES + 1)
    if len(data) > catalog.MAX_PHOTO_BYTES:
        raise bad_request("Photo should be less than 1MB")
    return Photo(data=data, contentType=photo.content_type or "application/octet-stream")


@app.post("/api/v1/product/create-product", status_code=status.HTTP_201_CREATED)
def create_product(
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    quantity: Optional[str] = Form(None),
    shipping: Optional[str] = Form(None),
    photo: Optional[UploadFile] = File(None),
    admin: dict = Depends(require_admin),
):
    form = {"name": name, "description": description, "price": price,
            "category": category, "quantity": quantity, "shipping": shipping}
    with database_errors("Error in creating product"):
        values = _parse_product_form(form)
        product = Product(**values, photo=_read_photo(photo))
        product_id = create_document(PRODUCTS, product)
        saved = col(PRODUCTS).find_one({"_id": ObjectId(product_id)}, WITHOUT_PHOTO)

    logger.info("Product created", extra={"product_id": product_id, "slug": product.slug})
    return {"success": True, "message": "Product Created Successfully", "products": doc_to_json(saved)}


@app.put("/api/v1/product/update-product/{pid}")
def update_product(
    pid: str,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    quantity: Optional[str] = Form(None),
    shipping: Optional[str] = Form(None),
    photo: Optional[UploadFile] = File(None),
    admin: dict = Depends(require_admin),
):
    oid = to_object_id(pid)
    if oid is None:
        raise not_found("Product not found")

    form = {"name": name, "description": description, "price": price,
            "category": category, "quantity": quantity, "shipping": shipping}
    with database_errors("Error updating product"):
        update = _parse_product_form(form, partial=True)
        new_photo = _read_photo(photo)
        if new_photo is not None:
            update["photo"] = new_photo.model_dump()
        update["updated_at"] = datetime.now(timezone.utc)
        product = col(PRODUCTS).find_one_and_update(
            {"_id": oid}, {"$set": update}, projection=WITHOUT_PHOTO, return_document=ReturnDocument.AFTER
        )
    if not product:
        raise not_found("Product not found")

    logger.info("Product updated", extra={"product_id": pid, "fields": sorted(update)})
    return {"success": True, "message": "Product updated successfully", "product": doc_to_json(product)}


@app.delete("/api/v1/product/delete-product/{pid}")
def delete_product(pid: str, admin: dict = Depends(require_admin)):
    oid = to_object_id(pid)
    if oid is None:
        raise not_found("Product Not Found")
    with database_errors("Error while deleting product"):
        result = col(PRODUCTS).delete_one({"_id": oid})
    if result.deleted_count == 0:
        raise not_found("Product Not Found")

    logger.info("Product deleted", extra={"product_id": pid})
    return {"success": True, "message": "Product Deleted successfully"}


@app.get("/api/v1/product/get-product")
def latest_products():
    with database_errors("Error in getting products"):
        products = list(
            col(PRODUCTS).find({}, WITHOUT_PHOTO).sort("created_at", DESCENDING).limit(catalog.LATEST_PRODUCTS_LIMIT)
        )
        populate_category(products)
    return {"success": True, "counTotal": len(products), "message": "All Products", "products": doc_to_json(products)}


@app.get("/api/v1/product/get-product/{slug}")
def single_product(slug: str):
    with database_errors("Error while getting single product"):
        product = col(PRODUCTS).find_one({"slug": slug}, WITHOUT_PHOTO)
        if product:
            populate_category([product])
    return {"success": True, "message": "Single Product Fetched", "product": doc_to_json(product)}


@app.get("/api/v1/product/product-photo/{pid}")
def product_photo(pid: str):
    oid = to_object_id(pid)
    if oid is None:
        raise not_found("Product not found")
    with database_errors("Error while getting photo"):
        product = col(PRODUCTS).find_one({"_id": oid}, {"photo": 1})
    if not product:
        raise not_found("Product not found")
    photo = product.get("photo") or {}
    if not photo.get("data"):
        raise not_found("Photo not found")
    return Response(content=bytes(photo["data"]), media_type=photo.get("contentType") or "application/octet-stream")


@app.post("/api/v1/product/product-filters")
def filter_products(payload: ProductFilterRequest):
    try:
        query = catalog.build_filter_query(payload.checked, payload.radio)
    except InvalidQuery as exc:
        raise bad_request(str(exc))
    with database_errors("Error while Filtering Products"):
        products = list(col(PRODUCTS).find(query, WITHOUT_PHOTO))
    return {"success": True, "products": doc_to_json(products)}


@app.get("/api/v1/product/product-count")
def product_count():
    with database_errors("Error in product count"):
        total = col(PRODUCTS).estimated_document_count()
    return {"success": True, "total": total}


@app.get("/api/v1/product/product-list/{page}")
def product_list(page: int):
    try:
        skip, limit = catalog.page_window(page)
    except InvalidQuery as exc:
        raise bad_request(str(exc))
    with database_errors("error in per page ctrl"):
        products = list(col(PRODUCTS).find({}, WITHOUT_PHOTO).sort("_id", DESCENDING).skip(skip).limit(limit))
    return {"success": True, "products": doc_to_json(products)}


@app.get("/api/v1/product/search/{keyword}")
def search_products(keyword: str):
    with database_errors("Error in search product API"):
        results = list(col(PRODUCTS).find(catalog.build_search_query(keyword), WITHOUT_PHOTO))
    return doc_to_json(results)


@app.get("/api/v1/product/related-product/{pid}/{cid}")
def related_products(pid: str, cid: str):
    product_id, category_id = to_object_id(pid), to_object_id(cid)
    if product_id is None or category_id is None:
        raise bad_request("Invalid product or category id")
    with database_errors("Error while getting related product"):
        products = list(
            col(PRODUCTS)
            .find({"category": category_id, "_id": {"$ne": product_id}}, WITHOUT_PHOTO)
            .limit(catalog.RELATED_PRODUCTS_LIMIT)
        )
        populate_category(products)
    return {"success": True, "products": doc_to_json(products)}


@app.get("/api/v1/product/product-category/{slug}")
def products_by_category(slug: str):
    with database_errors("Error while getting products"):
        category = col(CATEGORIES).find_one({"slug": slug})
        if not category:
            raise not_found("Category not found")
        products = list(col(PRODUCTS).find({"category": category["_id"]}, WITHOUT_PHOTO))
        populate_category(products)
    return {"success": True, "category": doc_to_json(category), "products": doc_to_json(products)}


# -------------------- Payments --------------------

@app.get("/api/v1/product/braintree/token")
def braintree_token():
    try:
        token = payments.generate_client_token()
    except payments.GatewayError:
        raise APIError(status.HTTP_502_BAD_GATEWAY, "Payment gateway unavailable", ErrorCode.BILLING_GATEWAY_ERROR)
    return {"success": True, "clientToken": token}


def _discard_pending_order(orders, order_id: ObjectId) -> None:
    # Frees the Idempotency-Key so the buyer can retry with another card.
    try:
        orders.delete_one({"_id": order_id, "payment": {}})
    except PyMongoError:
        logger.exception("Could not discard pending order", extra={"order_id": str(order_id)})


@app.post("/api/v1/product/braintree/payment")
def braintree_payment(
    payload: PaymentRequest,
    response: Response,
    claims: dict = Depends(require_sign_in),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    buyer = to_object_id(claims["_id"])
    orders = col(ORDERS)

    if idempotency_key is not None:
        if not idempotency_key.strip() or len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise bad_request(f"Idempotency-Key must be 1 to {MAX_IDEMPOTENCY_KEY_LENGTH} characters")

    product_ids = []
    for item in payload.cart:
        oid = to_object_id(item.id)
        if oid is None:
            raise bad_request(f"Invalid product id: {item.id}")
        product_ids.append(oid)

    # A keyed checkout claims its key with an unpaid order before the card is touched;
    # the unique (buyer, idempotency_key) index lets exactly one request through.
    pending_id = None
    if idempotency_key is not None:
        existing = None
        with database_errors("Error while placing order"):
            try:
                pending = Order(products=product_ids, buyer=buyer, idempotency_key=idempotency_key)
                pending_id = ObjectId(create_document(ORDERS, pending))
            except DuplicateKeyError:
                existing = orders.find_one({"buyer": buyer, "idempotency_key": idempotency_key})
        if pending_id is None:
            if existing and existing.get("payment", {}).get("success"):
                response.headers["X-Idempotency-Replayed"] = "true"
                return {"ok": True, "order": doc_to_json(existing)}
            raise conflict("A checkout with this Idempotency-Key is already in progress")

    amount = catalog.order_total(item.price for item in payload.cart)
    try:
        payment = payments.charge(amount, payload.nonce, order_id=str(pending_id) if pending_id is not None else None)
    except payments.PaymentDeclined as exc:
        if pending_id is not None:
            _discard_pending_order(orders, pending_id)
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={"success": False, "error": exc.message, "error_code": ErrorCode.BILLING_PAYMENT_FAILED.value},
        )
    except payments.GatewayError:
        if pending_id is not None:
            _discard_pending_order(orders, pending_id)
        raise APIError(status.HTTP_502_BAD_GATEWAY, "Payment gateway unavailable", ErrorCode.BILLING_GATEWAY_ERROR)

    try:
        if pending_id is not None:
            saved = orders.find_one_and_update(
                {"_id": pending_id},
                {"$set": {"payment": payment, "updated_at": datetime.now(timezone.utc)}},
                return_document=ReturnDocument.AFTER,
            )
            order_id = str(pending_id)
        else:
            order = Order(products=product_ids, payment=payment, buyer=buyer)
            order_id = create_document(ORDERS, order)
            saved = orders.find_one({"_id": ObjectId(order_id)})
    except PyMongoError:
        # The card is already charged at this point; the transaction id is the only trace left.
        logger.error(
            "Order not saved after captured payment",
            extra={"transaction_id": payment["transaction"]["id"], "buyer": str(buyer), "amount": amount},
            exc_info=True,
        )
        raise APIError(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Payment captured but the order could not be saved",
            ErrorCode.SYS_DATABASE_ERROR,
        )

    logger.info("Order created", extra={"order_id": order_id, "buyer": str(buyer), "amount": amount})
    return {"ok": True, "order": doc_to_json(saved)}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
