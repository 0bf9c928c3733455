import math
import os
import re
import secrets
import unicodedata
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

import bcrypt
import resend
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from werkzeug.middleware.proxy_fix import ProxyFix

from . import emails
from .cache import ResponseCache
from .errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    EmailDeliveryError,
    NotFoundError,
    PaymentProviderError,
    ValidationError,
    error_response,
    register_error_handlers,
)
from .inventory import adjust_stock, release_stock, reserve_stock, set_stock
from .order_status import (
    CANCELLED,
    CUSTOMER_CANCELLABLE_STATUSES,
    DELIVERED,
    FAILED,
    IN_FLIGHT_PAYMENT_STATUSES,
    LATE_SUCCESS_PAYMENT_STATUSES,
    ORDER_REFUNDABLE_STATUSES,
    ORDER_STATUSES,
    PAYMENT_STATUSES,
    PENDING,
    PROCESSING,
    REFUNDED,
    SHIPPED,
    STATUS_EMAIL_STATUSES,
    STOCK_RESTORING_STATUSES,
    SUCCEEDED,
    can_transition_payment,
    ensure_order_transition,
    ensure_payment_transition,
    normalize_status,
    payment_status_for_intent,
)
from .payments import StripeGateway
from .pricing import (
    calculate_totals,
    from_minor_units,
    line_total,
    merge_line_quantities,
    round_money,
    safe_float,
    safe_positive_int,
    to_minor_units,
)
from .timeutils import isoformat, parse_iso_date, utcnow

load_dotenv()

ROLE_ADMIN = "admin"
ROLE_MODERATOR = "moderator"
ROLE_CUSTOMER = "customer"
ALLOWED_USER_ROLES = {ROLE_ADMIN, ROLE_MODERATOR, ROLE_CUSTOMER}
STAFF_ROLES = (ROLE_ADMIN, ROLE_MODERATOR)

ADDRESS_FIELDS = ("street", "city", "state", "zip_code", "country")
ADDRESS_FIELD_ALIASES = {
    "street": ("street", "line1", "address"),
    "city": ("city",),
    "state": ("state", "region", "province"),
    "zip_code": ("zip_code", "zipCode", "postcode", "postal_code"),
    "country": ("country",),
}

MAX_CART_LINE_QUANTITY = 10
MAX_CART_LINES = 50
MAX_WISHLIST_ITEMS = 100
LOW_STOCK_THRESHOLD = 10
REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}
PRODUCT_SORT_FIELDS = {
    "name": "name",
    "price": "price",
    "created_at": "created_at",
    "rating": "average_rating",
}
ORDER_SORT_FIELDS = ("created_at", "updated_at", "total", "status")
REVIEW_SORTS = {
    "newest": [("created_at", -1)],
    "oldest": [("created_at", 1)],
    "highest_rating": [("rating", -1), ("created_at", -1)],
    "lowest_rating": [("rating", 1), ("created_at", -1)],
    "most_helpful": [("helpful_count", -1), ("created_at", -1)],
}

PASSWORD_MIN_LENGTH = 8


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def create_app(test_config: Optional[Dict] = None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # --- Configuration ---
    app.config.from_mapping(
        MONGO_URI=os.getenv("MONGO_URI", "mongodb://localhost:27017/zyrastore"),
        JWT_SECRET_KEY=os.getenv("JWT_SECRET_KEY", "change-me-in-production"),
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(hours=_env_int("JWT_ACCESS_TOKEN_EXPIRES", 1)),
        STRIPE_SECRET_KEY=os.getenv("STRIPE_SECRET_KEY", ""),
        STRIPE_WEBHOOK_SECRET=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        STORE_CURRENCY=(os.getenv("STORE_CURRENCY") or "usd").strip().lower(),
        RESEND_API_KEY=os.getenv("RESEND_API_KEY", ""),
        EMAIL_SENDER=os.getenv("EMAIL_SENDER", "no-reply@zyrastore.com"),
        DEFAULT_ADMIN_EMAIL=(os.getenv("DEFAULT_ADMIN_EMAIL") or "admin@zyrastore.com"),
        BCRYPT_LOG_ROUNDS=_env_int("BCRYPT_LOG_ROUNDS", 12),
        CORS_ALLOWED_ORIGINS=os.getenv("CORS_ALLOWED_ORIGINS", ""),
        TRUSTED_PROXY_HOPS=_env_int("TRUSTED_PROXY_HOPS", 1),
        ORDER_CACHE_TTL_SECONDS=_env_int("ORDER_CACHE_TTL_SECONDS", 300),
        CATALOG_CACHE_TTL_SECONDS=_env_int("CATALOG_CACHE_TTL_SECONDS", 60),
        LOG_LEVEL=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config["LOG_LEVEL"])

    resend_api_key = str(app.config["RESEND_API_KEY"] or "").strip()
    if resend_api_key:
        resend.api_key = resend_api_key

    # Honor proxy headers so audit logs keep the client address.
    trusted_proxy_hops = max(0, safe_positive_int(app.config["TRUSTED_PROXY_HOPS"], 0))
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        os.getenv("FRONTEND_URL", "").strip(),
    ]
    for origin in str(app.config["CORS_ALLOWED_ORIGINS"] or "").split(","):
        trimmed = origin.strip()
        if trimmed:
            allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    register_error_handlers(app)

    jwt = JWTManager(app)

    @jwt.unauthorized_loader
    def handle_missing_token(reason):
        return error_response("Authentication required.", 401)

    @jwt.invalid_token_loader
    def handle_invalid_token(reason):
        return error_response("Invalid authentication token.", 401)

    @jwt.expired_token_loader
    def handle_expired_token(jwt_header, jwt_payload):
        return error_response("Authentication token has expired.", 401)

    mongo = PyMongo(app)
    db = mongo.db

    order_cache = ResponseCache(ttl=app.config["ORDER_CACHE_TTL_SECONDS"])
    catalog_cache = ResponseCache(ttl=app.config["CATALOG_CACHE_TTL_SECONDS"])
    app.extensions["zyra_order_cache"] = order_cache
    app.extensions["zyra_catalog_cache"] = catalog_cache
    app.extensions["payment_gateway"] = StripeGateway(
        app.config["STRIPE_SECRET_KEY"],
        app.config["STRIPE_WEBHOOK_SECRET"],
        currency=app.config["STORE_CURRENCY"],
    )

    default_admin_email = str(app.config["DEFAULT_ADMIN_EMAIL"] or "").strip().lower()
    bcrypt_rounds = min(max(safe_positive_int(app.config["BCRYPT_LOG_ROUNDS"], 4), 4), 31)
    store_currency = app.config["STORE_CURRENCY"]

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    otp_code_length = 6
    otp_expiration_minutes = 10
    password_reset_expiration_minutes = 10
    max_failed_otp_attempts = 5

    email_verification_collection = db.email_verification_tokens
    audit_logs_collection = db.audit_logs

    index_specs = [
        (db.users, "email", {"unique": True}),
        (email_verification_collection, "email", {"unique": True}),
        (email_verification_collection, "expires_at", {"expireAfterSeconds": 0}),
        (db.categories, "slug", {"unique": True}),
        (db.products, "sku", {"unique": True}),
        (db.products, "slug", {"unique": True}),
        (db.products, [("category_id", 1), ("is_active", 1)], {}),
        (db.carts, "user_id", {"unique": True}),
        (db.wishlist_items, [("user_id", 1), ("product_id", 1)], {"unique": True}),
        (db.reviews, [("user_id", 1), ("product_id", 1)], {"unique": True}),
        (db.reviews, [("product_id", 1), ("created_at", -1)], {}),
        (db.orders, "order_number", {"unique": True}),
        (db.orders, [("user_id", 1), ("created_at", -1)], {}),
        (db.payments, "stripe_payment_intent_id", {"unique": True}),
        (db.payments, [("order_id", 1), ("status", 1)], {}),
        (audit_logs_collection, [("created_at", -1)], {}),
        (audit_logs_collection, [("user_email", 1), ("user_name", 1), ("action", 1)], {}),
    ]
    for collection, keys, options in index_specs:
        try:
            collection.create_index(keys, **options)
        except Exception as exc:
            app.logger.warning(
                "Unable to ensure index %s on %s: %s", keys, collection.name, exc
            )

    # --- Helpers ---

    def payment_gateway() -> StripeGateway:
        return app.extensions["payment_gateway"]

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def normalize_role(value: Optional[str]) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in ALLOWED_USER_ROLES else ROLE_CUSTOMER

    def get_user_role(user_document) -> str:
        if not user_document:
            return ROLE_CUSTOMER

        email = normalize_email(user_document.get("email"))
        if email == default_admin_email:
            return ROLE_ADMIN

        return normalize_role(user_document.get("role", ROLE_CUSTOMER))

    def is_staff(user_document) -> bool:
        return get_user_role(user_document) in STAFF_ROLES

    def get_json_payload() -> Dict:
        payload = request.get_json(silent=True)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object.")
        return payload

    def parse_object_id(value, label: str) -> ObjectId:
        if isinstance(value, ObjectId):
            return value
        try:
            return ObjectId(str(value or "").strip())
        except (InvalidId, TypeError):
            raise ValidationError(f"Invalid {label} identifier.")

    def parse_strict_int(value, field_name: str) -> int:
        if isinstance(value, bool):
            raise ValidationError(f"{field_name} must be a whole number.")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str) and re.fullmatch(r"-?\d+", value.strip()):
            return int(value.strip())
        raise ValidationError(f"{field_name} must be a whole number.")

    def parse_amount(value, field_name: str) -> float:
        if isinstance(value, bool):
            raise ValidationError(f"{field_name} must be a number.")
        amount = safe_float(value, None)
        if amount is None:
            raise ValidationError(f"{field_name} must be a number.")
        return round_money(amount)

    def parse_bool_arg(value) -> Optional[bool]:
        if value is None:
            return None
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return None

    def parse_pagination(default_limit: int = 20, max_limit: int = 100) -> Tuple[int, int]:
        page = safe_positive_int(request.args.get("page"), 1)
        limit = safe_positive_int(request.args.get("limit"), 0) or default_limit
        return page, min(limit, max_limit)

    def build_pagination(page: int, limit: int, total: int) -> Dict[str, int]:
        return {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        }

    def cache_key_for_request(prefix: str, *parts) -> str:
        query = "&".join(
            f"{key}={value}" for key, value in sorted(request.args.items(multi=True))
        )
        return ":".join([prefix, *[str(part) for part in parts], query])

    def hash_secret(value: str) -> bytes:
        return bcrypt.hashpw(value.encode("utf-8"), bcrypt.gensalt(rounds=bcrypt_rounds))

    def check_secret(value: str, hashed) -> bool:
        if not hashed:
            return False
        if isinstance(hashed, str):
            hashed = hashed.encode("utf-8")
        return bcrypt.checkpw(value.encode("utf-8"), hashed)

    def validate_password(password: str) -> None:
        if (
            len(password) < PASSWORD_MIN_LENGTH
            or not re.search(r"[A-Za-z]", password)
            or not re.search(r"\d", password)
        ):
            raise ValidationError(
                f"Password must be at least {PASSWORD_MIN_LENGTH} characters and include letters and numbers."
            )

    def generate_otp_code(length: int = otp_code_length) -> str:
        upper_bound = 10**length
        return f"{secrets.randbelow(upper_bound):0{length}d}"

    def load_current_user():
        try:
            user_id = ObjectId(str(get_jwt_identity()))
        except (InvalidId, TypeError):
            raise AuthenticationError("Invalid authentication token.")
        user = db.users.find_one({"_id": user_id})
        if not user:
            raise AuthenticationError("Account not found.")
        if user.get("is_active", True) is False:
            raise AuthorizationError("This account has been deactivated.")
        return user

    def require_role(*roles: str):
        current_user = load_current_user()
        user_role = get_user_role(current_user)
        allowed = {normalize_role(role) for role in roles if role}
        if user_role == ROLE_ADMIN or not allowed or user_role in allowed:
            return current_user
        raise AuthorizationError()

    def require_admin_user():
        return require_role(ROLE_ADMIN)

    def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(metadata, dict):
            return {}
        sanitized: Dict[str, str] = {}
        for key, value in metadata.items():
            if value is None:
                continue
            sanitized[str(key)] = str(value)
        return sanitized

    def record_audit_log(
        actor_email: Optional[str], action: str, metadata: Optional[Dict] = None
    ):
        if not action:
            return
        try:
            normalized_email = normalize_email(actor_email)
            log_document = {
                "user_email": normalized_email or None,
                "user_name": "",
                "action": action,
                "metadata": sanitize_metadata(metadata),
                "created_at": utcnow(),
            }
            if normalized_email:
                user_document = db.users.find_one({"email": normalized_email})
                if user_document:
                    log_document["user_name"] = user_document.get("name", "") or ""
                    log_document["metadata"].setdefault(
                        "user_role", get_user_role(user_document)
                    )
            audit_logs_collection.insert_one(log_document)
        except Exception as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    def serialize_audit_log(document):
        if not document:
            return {}
        metadata = document.get("metadata")
        return {
            "id": str(document.get("_id")),
            "user_email": document.get("user_email") or "",
            "user_name": document.get("user_name") or "",
            "action": document.get("action") or "",
            "metadata": metadata if isinstance(metadata, dict) else {},
            "created_at": isoformat(document.get("created_at")),
        }

    def slugify(value: Optional[str]) -> str:
        condensed = " ".join(str(value or "").split()).lower()
        ascii_name = (
            unicodedata.normalize("NFKD", condensed).encode("ascii", "ignore").decode("ascii")
        )
        slug = re.sub(r"[^a-z0-9]+", "-", ascii_name).strip("-")
        if not slug:
            slug = uuid4().hex
        return slug

    def normalize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(payload, dict):
            return {}

        normalized: Dict[str, str] = {}
        for field in ADDRESS_FIELDS:
            value = None
            for alias in ADDRESS_FIELD_ALIASES.get(field, (field,)):
                if alias in payload:
                    value = payload.get(alias)
                    break
            if value is None:
                continue
            trimmed = str(value).strip()
            if trimmed:
                normalized[field] = trimmed[:200]
        return normalized

    def missing_address_fields(payload: Optional[Dict]) -> List[str]:
        normalized = normalize_address_payload(payload)
        return [field for field in ADDRESS_FIELDS if not normalized.get(field)]

    def require_complete_address(payload: Optional[Dict], label: str) -> Dict[str, str]:
        missing = missing_address_fields(payload)
        if missing:
            raise ValidationError(
                f"{label} is incomplete.", {"missing_fields": missing}
            )
        return normalize_address_payload(payload)

    def serialize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
        normalized = normalize_address_payload(payload)
        return {field: normalized.get(field, "") for field in ADDRESS_FIELDS}

    # --- Serializers ---

    def serialize_user_profile(user_document) -> Dict[str, object]:
        if not user_document:
            return {}

        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "phone": user_document.get("phone", "") or "",
            "role": get_user_role(user_document),
            "email_verified": bool(user_document.get("email_verified")),
            "verified_at": isoformat(user_document.get("verified_at")),
            "is_active": user_document.get("is_active", True) is not False,
            "shipping_address": serialize_address_payload(
                user_document.get("shipping_address")
            ),
            "created_at": isoformat(user_document.get("created_at")),
        }

    def serialize_admin_user(user_document) -> Dict[str, object]:
        if not user_document:
            return {}

        serialized = serialize_user_profile(user_document)
        serialized.update(
            {
                "last_login_at": isoformat(user_document.get("last_login_at")),
                "deactivated_at": isoformat(user_document.get("deactivated_at")),
                "order_count": db.orders.count_documents(
                    {"user_id": user_document.get("_id")}
                ),
            }
        )
        return serialized

    def serialize_category(category_document, product_counts=None):
        if not category_document:
            return None
        category_id = category_document.get("_id")
        count = 0
        if product_counts is not None:
            count = int(product_counts.get(category_id, 0))
        return {
            "id": str(category_id),
            "name": category_document.get("name", "") or "",
            "slug": category_document.get("slug", "") or "",
            "description": category_document.get("description", "") or "",
            "product_count": count,
            "created_at": isoformat(category_document.get("created_at")),
            "updated_at": isoformat(category_document.get("updated_at")),
        }

    def build_category_product_counts() -> Dict[ObjectId, int]:
        pipeline = [
            {"$match": {"is_active": True, "category_id": {"$ne": None}}},
            {"$group": {"_id": "$category_id", "count": {"$sum": 1}}},
        ]
        return {
            entry["_id"]: int(entry.get("count", 0))
            for entry in db.products.aggregate(pipeline)
        }

    def fetch_categories_by_ids(category_ids: Iterable) -> Dict[ObjectId, Dict]:
        unique_ids = list({cid for cid in category_ids if isinstance(cid, ObjectId)})
        if not unique_ids:
            return {}
        return {
            document["_id"]: document
            for document in db.categories.find({"_id": {"$in": unique_ids}})
        }

    def resolve_category(identifier: str):
        candidate = str(identifier or "").strip()
        if not candidate:
            return None
        if ObjectId.is_valid(candidate):
            category = db.categories.find_one({"_id": ObjectId(candidate)})
            if category:
                return category
        return db.categories.find_one({"slug": candidate.lower()})

    def serialize_product(product_document, category_map=None):
        if not product_document:
            return None

        category_id = product_document.get("category_id")
        if category_map is None:
            category_map = fetch_categories_by_ids([category_id])
        category_document = category_map.get(category_id)
        stock = int(product_document.get("stock", 0) or 0)
        compare_at_price = product_document.get("compare_at_price")

        return {
            "id": str(product_document.get("_id")),
            "name": product_document.get("name", "") or "",
            "slug": product_document.get("slug", "") or "",
            "sku": product_document.get("sku", "") or "",
            "description": product_document.get("description", "") or "",
            "price": round_money(product_document.get("price")),
            "compare_at_price": round_money(compare_at_price)
            if compare_at_price is not None
            else None,
            "stock": stock,
            "in_stock": stock > 0,
            "images": list(product_document.get("images") or []),
            "is_active": product_document.get("is_active", True) is not False,
            "is_featured": bool(product_document.get("is_featured")),
            "average_rating": round(safe_float(product_document.get("average_rating"), 0.0), 2),
            "review_count": int(product_document.get("review_count", 0) or 0),
            "category": {
                "id": str(category_document["_id"]),
                "name": category_document.get("name", ""),
                "slug": category_document.get("slug", ""),
            }
            if category_document
            else None,
            "created_at": isoformat(product_document.get("created_at")),
            "updated_at": isoformat(product_document.get("updated_at")),
        }

    def serialize_products(product_documents: List[Dict]) -> List[Dict]:
        category_map = fetch_categories_by_ids(
            document.get("category_id") for document in product_documents
        )
        return [serialize_product(document, category_map) for document in product_documents]

    def fetch_product(product_id, *, active_only: bool = True):
        product_object_id = parse_object_id(product_id, "product")
        query: Dict[str, object] = {"_id": product_object_id}
        if active_only:
            query["is_active"] = True
        product_document = db.products.find_one(query)
        if not product_document:
            raise NotFoundError("Product not found.")
        return product_document

    def fetch_products_by_ids(product_ids: Iterable[ObjectId]) -> Dict[ObjectId, Dict]:
        unique_ids = list(set(product_ids))
        if not unique_ids:
            return {}
        return {
            document["_id"]: document
            for document in db.products.find({"_id": {"$in": unique_ids}})
        }

    def serialize_review(review_document, user_names=None):
        if not review_document:
            return None
        user_id = review_document.get("user_id")
        if user_names is None:
            user_names = {}
        return {
            "id": str(review_document.get("_id")),
            "product_id": str(review_document.get("product_id")),
            "user_id": str(user_id),
            "user_name": user_names.get(user_id, "") or "",
            "rating": int(review_document.get("rating", 0) or 0),
            "title": review_document.get("title", "") or "",
            "comment": review_document.get("comment", "") or "",
            "helpful_count": int(review_document.get("helpful_count", 0) or 0),
            "verified_purchase": bool(review_document.get("verified_purchase")),
            "created_at": isoformat(review_document.get("created_at")),
        }

    def serialize_order_item(item: Dict) -> Dict[str, object]:
        return {
            "product_id": str(item.get("product_id")),
            "name": item.get("name", "") or "",
            "sku": item.get("sku", "") or "",
            "price": round_money(item.get("price")),
            "quantity": safe_positive_int(item.get("quantity"), 0),
            "line_total": line_total(item.get("price"), item.get("quantity")),
        }

    def serialize_payment(payment_document):
        if not payment_document:
            return None
        return {
            "id": str(payment_document.get("_id")),
            "order_id": str(payment_document.get("order_id")),
            "user_id": str(payment_document.get("user_id")),
            "amount": round_money(payment_document.get("amount")),
            "currency": payment_document.get("currency") or store_currency,
            "status": payment_document.get("status") or PENDING,
            "stripe_payment_intent_id": payment_document.get("stripe_payment_intent_id") or "",
            "refunded_amount": round_money(payment_document.get("refunded_amount")),
            "failure_reason": payment_document.get("failure_reason") or "",
            "created_at": isoformat(payment_document.get("created_at")),
            "updated_at": isoformat(payment_document.get("updated_at")),
        }

    def serialize_order(order_document, include_payments: bool = False):
        if not order_document:
            return None

        customer_document = order_document.get("customer") or {}
        serialized = {
            "id": str(order_document.get("_id")),
            "order_number": order_document.get("order_number") or "",
            "user_id": str(order_document.get("user_id")),
            "customer": {
                "name": customer_document.get("name", "") or "",
                "email": normalize_email(customer_document.get("email")),
            },
            "items": [serialize_order_item(item) for item in order_document.get("items") or []],
            "subtotal": round_money(order_document.get("subtotal")),
            "total": round_money(order_document.get("total")),
            "total_items": int(order_document.get("total_items", 0) or 0),
            "currency": order_document.get("currency") or store_currency,
            "status": order_document.get("status") or PENDING,
            "payment_status": order_document.get("payment_status") or PENDING,
            "shipping_address": serialize_address_payload(order_document.get("shipping_address")),
            "billing_address": serialize_address_payload(order_document.get("billing_address")),
            "tracking_number": order_document.get("tracking_number") or "",
            "notes": order_document.get("notes") or "",
            "status_history": [
                {
                    "status": entry.get("status"),
                    "changed_at": isoformat(entry.get("changed_at")),
                    "changed_by": entry.get("changed_by") or "",
                }
                for entry in order_document.get("status_history") or []
            ],
            "created_at": isoformat(order_document.get("created_at")),
            "updated_at": isoformat(order_document.get("updated_at")),
        }
        if include_payments:
            serialized["payments"] = [
                serialize_payment(payment)
                for payment in db.payments.find({"order_id": order_document["_id"]}).sort(
                    "created_at", -1
                )
            ]
        return serialized

    # --- Verification codes ---

    def persist_verification_code(email: str, otp: str):
        now = utcnow()
        expires_at = now + timedelta(minutes=otp_expiration_minutes)
        email_verification_collection.update_one(
            {"email": email},
            {
                "$set": {
                    "email": email,
                    "otp_hash": hash_secret(otp),
                    "expires_at": expires_at,
                    "created_at": now,
                    "failed_attempts": 0,
                }
            },
            upsert=True,
        )
        return expires_at

    def dispatch_verification_code(email: str) -> Dict[str, object]:
        otp = generate_otp_code()
        expires_at = persist_verification_code(email, otp)

        sent, error_details = emails.send_verification_email(
            email, otp, otp_expiration_minutes
        )
        if not sent:
            email_verification_collection.delete_one({"email": email})
            app.logger.error(
                "Verification code dispatch failed for %s: %s",
                email,
                error_details or "Unknown Resend error",
            )
            return {
                "success": False,
                "error": error_details or "Failed to deliver verification email.",
            }

        return {"success": True, "expires_at": expires_at}

    def verification_response_fields(expires_at) -> Dict[str, object]:
        fields: Dict[str, object] = {
            "otp_length": otp_code_length,
            "expires_in_seconds": otp_expiration_minutes * 60,
        }
        if expires_at:
            fields["expires_at"] = isoformat(expires_at)
        return fields

    def begin_password_reset(user_document) -> str:
        otp = generate_otp_code()
        db.users.update_one(
            {"_id": user_document["_id"]},
            {
                "$set": {
                    "password_reset_otp_hash": hash_secret(otp),
                    "password_reset_otp_expiration": utcnow()
                    + timedelta(minutes=password_reset_expiration_minutes),
                    "password_reset_failed_attempts": 0,
                }
            },
        )
        return otp

    def clear_password_reset_state(user_id):
        db.users.update_one(
            {"_id": user_id},
            {
                "$unset": {
                    "password_reset_otp_hash": "",
                    "password_reset_otp_expiration": "",
                    "password_reset_failed_attempts": "",
                }
            },
        )

    # --- Orders and payments ---

    def invalidate_order_cache():
        order_cache.invalidate_prefix("orders:")

    def invalidate_catalog_cache():
        catalog_cache.invalidate_prefix("catalog:")

    def fetch_order(order_identifier: str):
        candidate = str(order_identifier or "").strip()
        order_document = None
        if ObjectId.is_valid(candidate):
            order_document = db.orders.find_one({"_id": ObjectId(candidate)})
        if not order_document and candidate:
            order_document = db.orders.find_one({"order_number": candidate.upper()})
        if not order_document:
            raise NotFoundError("Order not found.")
        return order_document

    def ensure_order_access(order_document, user_document, *, staff_allowed: bool = True):
        if order_document.get("user_id") == user_document.get("_id"):
            return
        if get_user_role(user_document) == ROLE_ADMIN:
            return
        if staff_allowed and is_staff(user_document):
            return
        raise AuthorizationError("You do not have access to this order.")

    def history_entry(status: str, actor: Optional[str]) -> Dict[str, object]:
        return {"status": status, "changed_at": utcnow(), "changed_by": actor or "system"}

    def generate_order_number() -> str:
        return f"ZS-{utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"

    def restore_order_stock(order_id: ObjectId) -> bool:
        """Put an order's units back exactly once, whoever calls first.

        The status change that owes stock back sets ``stock_restore_pending`` in
        the same write. Each line is claimed in ``restocked_lines`` before its
        units go back and the flags are only cleared once every line is back, so
        a restore that stops half way is finished by the next call.
        """
        order_document = db.orders.find_one(
            {"_id": order_id, "stock_reserved": True, "stock_restore_pending": True}
        )
        if not order_document:
            return False
        items = order_document.get("items") or []
        try:
            for index, item in enumerate(items):
                claimed = db.orders.update_one(
                    {
                        "_id": order_id,
                        "stock_reserved": True,
                        "restocked_lines": {"$ne": index},
                    },
                    {"$addToSet": {"restocked_lines": index}},
                )
                if not claimed.modified_count:
                    continue
                try:
                    release_stock(db, [item])
                except Exception:
                    db.orders.update_one({"_id": order_id}, {"$pull": {"restocked_lines": index}})
                    raise
        finally:
            invalidate_catalog_cache()

        finish_filter: Dict[str, object] = {"_id": order_id, "stock_reserved": True}
        if items:
            finish_filter["restocked_lines"] = {"$all": list(range(len(items)))}
        finished = db.orders.update_one(
            finish_filter,
            {
                "$set": {
                    "stock_reserved": False,
                    "stock_restore_pending": False,
                    "stock_restored_at": utcnow(),
                }
            },
        )
        if not finished.modified_count:
            return False
        app.logger.info("Restored stock for order %s", order_document.get("order_number"))
        return True

    def transition_order_status(
        order_document,
        requested_status: str,
        actor: Optional[str],
        extra_fields: Optional[Dict] = None,
    ):
        """Move an order along the transition table, guarded on its current status."""
        current_status = order_document.get("status") or PENDING
        new_status = ensure_order_transition(current_status, requested_status)
        now = utcnow()
        update_fields = {"status": new_status, "updated_at": now, **(extra_fields or {})}
        if new_status == CANCELLED:
            update_fields["cancelled_at"] = now
            if current_status in STOCK_RESTORING_STATUSES:
                update_fields["stock_restore_pending"] = True
        elif new_status == SHIPPED:
            update_fields["shipped_at"] = now
        elif new_status == DELIVERED:
            update_fields["delivered_at"] = now

        updated_order = db.orders.find_one_and_update(
            {"_id": order_document["_id"], "status": current_status},
            {"$set": update_fields, "$push": {"status_history": history_entry(new_status, actor)}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated_order:
            raise ConflictError("The order was updated by another request. Please retry.")

        invalidate_order_cache()
        if update_fields.get("stock_restore_pending"):
            restore_order_stock(updated_order["_id"])
            updated_order = db.orders.find_one({"_id": updated_order["_id"]})
        return updated_order

    def notify_order_status(order_document):
        if order_document.get("status") not in STATUS_EMAIL_STATUSES:
            return
        recipient = normalize_email((order_document.get("customer") or {}).get("email"))
        if recipient:
            emails.send_order_status_email(order_document, recipient)

    def transition_payment(payment_document, new_status: str, extra_fields: Optional[Dict] = None):
        """Guarded payment status change. Returns None when nothing changed."""
        current_status = payment_document.get("status") or PENDING
        if current_status == new_status:
            return None
        ensure_payment_transition(current_status, new_status)
        now = utcnow()
        return db.payments.find_one_and_update(
            {"_id": payment_document["_id"], "status": current_status},
            {
                "$set": {"status": new_status, "updated_at": now, **(extra_fields or {})},
                "$push": {"status_history": {"status": new_status, "changed_at": now}},
            },
            return_document=ReturnDocument.AFTER,
        )

    def handle_payment_succeeded(payment_document, actor: Optional[str]):
        order_id = payment_document.get("order_id")
        now = utcnow()
        order_document = db.orders.find_one_and_update(
            {"_id": order_id, "status": PENDING},
            {
                "$set": {
                    "status": PROCESSING,
                    "payment_status": SUCCEEDED,
                    "paid_at": now,
                    "updated_at": now,
                },
                "$push": {"status_history": history_entry(PROCESSING, actor)},
            },
            return_document=ReturnDocument.AFTER,
        )
        invalidate_order_cache()
        if not order_document:
            db.orders.update_one(
                {"_id": order_id}, {"$set": {"payment_status": SUCCEEDED, "updated_at": now}}
            )
            stale_order = db.orders.find_one({"_id": order_id}) or {}
            app.logger.warning(
                "Payment %s succeeded for order %s in status %s; needs a manual refund review.",
                payment_document.get("_id"),
                order_id,
                stale_order.get("status"),
            )
            record_audit_log(
                None,
                "Payment succeeded for inactive order",
                {
                    "payment_id": str(payment_document.get("_id")),
                    "order_id": str(order_id),
                    "order_status": stale_order.get("status"),
                },
            )
            return stale_order

        app.logger.info("Order %s paid", order_document.get("order_number"))
        recipient = normalize_email((order_document.get("customer") or {}).get("email"))
        if recipient:
            emails.send_order_confirmation_email(order_document, recipient)
        return order_document

    def mirror_payment_status_on_order(order_id: ObjectId, payment_status: str):
        db.orders.update_one(
            {"_id": order_id, "payment_status": PENDING},
            {"$set": {"payment_status": payment_status, "updated_at": utcnow()}},
        )
        invalidate_order_cache()

    def apply_payment_refund(order_id: ObjectId, actor: Optional[str]):
        """Mark the order refunded and restock it if it never shipped."""
        now = utcnow()
        refund_fields = {
            "status": REFUNDED,
            "payment_status": REFUNDED,
            "refunded_at": now,
            "updated_at": now,
        }
        previous_order = None
        # Unshipped orders owe their stock back; record that in the same write.
        for statuses, extra_fields in (
            (ORDER_REFUNDABLE_STATUSES & STOCK_RESTORING_STATUSES, {"stock_restore_pending": True}),
            (ORDER_REFUNDABLE_STATUSES - STOCK_RESTORING_STATUSES, {}),
        ):
            previous_order = db.orders.find_one_and_update(
                {"_id": order_id, "status": {"$in": list(statuses)}},
                {
                    "$set": {**refund_fields, **extra_fields},
                    "$push": {"status_history": history_entry(REFUNDED, actor)},
                },
                return_document=ReturnDocument.BEFORE,
            )
            if previous_order is not None:
                break

        if previous_order is None:
            db.orders.update_one(
                {"_id": order_id}, {"$set": {"payment_status": REFUNDED, "updated_at": now}}
            )
        invalidate_order_cache()
        if previous_order is not None and previous_order.get("status") in STOCK_RESTORING_STATUSES:
            restore_order_stock(order_id)

        order_document = db.orders.find_one({"_id": order_id})
        if previous_order is not None and order_document:
            notify_order_status(order_document)
        return order_document

    def apply_intent_status(payment_document, intent: Dict, actor: Optional[str]):
        """Mirror a Stripe PaymentIntent status onto the payment and its order."""
        current_status = payment_document.get("status")
        new_status = payment_status_for_intent(
            intent.get("status"), intent.get("last_payment_error")
        )
        if new_status in (PENDING, current_status):
            return payment_document, False
        if new_status == SUCCEEDED and current_status in LATE_SUCCESS_PAYMENT_STATUSES:
            return record_late_payment_success(payment_document, actor)
        if not can_transition_payment(current_status, new_status):
            app.logger.warning(
                "Ignoring Stripe status %s for payment %s in status %s",
                intent.get("status"),
                payment_document.get("_id"),
                payment_document.get("status"),
            )
            return payment_document, False

        extra_fields: Dict[str, object] = {}
        if new_status == FAILED:
            last_error = intent.get("last_payment_error") or {}
            extra_fields["failure_reason"] = (
                last_error.get("message") if isinstance(last_error, dict) else ""
            ) or "The payment method was declined."

        updated_payment = transition_payment(payment_document, new_status, extra_fields)
        if updated_payment is None:
            # Another request (confirm or webhook) already applied this change.
            return db.payments.find_one({"_id": payment_document["_id"]}), False

        if new_status == SUCCEEDED:
            handle_payment_succeeded(updated_payment, actor)
        else:
            mirror_payment_status_on_order(updated_payment["order_id"], new_status)

        record_audit_log(
            actor,
            f"Payment {new_status.lower()}",
            {
                "payment_id": str(updated_payment["_id"]),
                "order_id": str(updated_payment["order_id"]),
                "stripe_payment_intent_id": updated_payment.get("stripe_payment_intent_id"),
            },
        )
        return updated_payment, True

    def record_late_payment_success(payment_document, actor: Optional[str]):
        """Stripe charged an attempt that was already closed here; keep the charge."""
        previous_status = payment_document.get("status")
        now = utcnow()
        updated_payment = db.payments.find_one_and_update(
            {"_id": payment_document["_id"], "status": previous_status},
            {
                "$set": {
                    "status": SUCCEEDED,
                    "late_success": True,
                    "updated_at": now,
                },
                "$push": {"status_history": {"status": SUCCEEDED, "changed_at": now}},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated_payment is None:
            return db.payments.find_one({"_id": payment_document["_id"]}), False

        app.logger.warning(
            "Stripe charged payment %s after it was marked %s; needs a manual refund review.",
            updated_payment["_id"],
            previous_status,
        )
        order_document = handle_payment_succeeded(updated_payment, actor)
        cancel_pending_payments(updated_payment["order_id"], actor)
        record_audit_log(
            actor,
            "Payment succeeded after it was closed",
            {
                "payment_id": str(updated_payment["_id"]),
                "order_id": str(updated_payment["order_id"]),
                "previous_status": previous_status,
                "order_status": order_document.get("status"),
                "stripe_payment_intent_id": updated_payment.get("stripe_payment_intent_id"),
            },
        )
        return updated_payment, True

    def cancel_pending_payments(order_id: ObjectId, actor: Optional[str]) -> int:
        cancelled = 0
        for payment_document in db.payments.find({"order_id": order_id, "status": PENDING}):
            updated_payment = transition_payment(payment_document, CANCELLED)
            if updated_payment is None:
                continue
            cancelled += 1
            intent_id = updated_payment.get("stripe_payment_intent_id")
            try:
                payment_gateway().cancel_payment_intent(intent_id)
            except PaymentProviderError as exc:
                app.logger.warning(
                    "Could not cancel Stripe intent %s for order %s: %s",
                    intent_id,
                    order_id,
                    exc.message,
                )
            record_audit_log(
                actor,
                "Payment cancelled",
                {"payment_id": str(updated_payment["_id"]), "order_id": str(order_id)},
            )
        if cancelled:
            mirror_payment_status_on_order(order_id, CANCELLED)
        return cancelled

    # --- Health ---

    @app.route("/health")
    def health():
        database_state = "ok"
        try:
            db.command("ping")
        except Exception as exc:
            app.logger.warning("Health check could not reach MongoDB: %s", exc)
            database_state = "unavailable"
        return jsonify({"status": "ok", "database": database_state}), 200

    # --- Authentication ---

    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload = get_json_payload()
        email = normalize_email(payload.get("email"))
        name = " ".join(str(payload.get("name", "")).split())
        password = str(payload.get("password", ""))

        if not email or not name or not password:
            raise ValidationError("Email, name, and password are required to create an account.")
        if not is_valid_email(email):
            raise ValidationError("Please provide a valid email address.")
        if len(name) > 100:
            raise ValidationError("Name must be 100 characters or fewer.")
        validate_password(password)

        if db.users.find_one({"email": email}):
            raise ConflictError("An account with this email already exists.")

        now = utcnow()
        user_document = {
            "email": email,
            "name": name,
            "password": hash_secret(password),
            "role": ROLE_ADMIN if email == default_admin_email else ROLE_CUSTOMER,
            "email_verified": False,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        try:
            insert_result = db.users.insert_one(user_document)
        except DuplicateKeyError:
            raise ConflictError("An account with this email already exists.")

        otp_result = dispatch_verification_code(email)
        if not otp_result.get("success"):
            db.users.delete_one({"_id": insert_result.inserted_id})
            raise EmailDeliveryError(
                "Account creation failed while sending the verification code. Please try again.",
                {"reason": otp_result.get("error")},
            )

        record_audit_log(
            email, "Registered new account", {"user_id": str(insert_result.inserted_id)}
        )

        return (
            jsonify(
                {
                    "message": "Account created. Enter the verification code we emailed to continue.",
                    "email": email,
                    "requires_verification": True,
                    **verification_response_fields(otp_result.get("expires_at")),
                }
            ),
            201,
        )

    @app.route("/api/auth/send-verification", methods=["POST"])
    def send_verification_code():
        payload = get_json_payload()
        email = normalize_email(payload.get("email"))
        if not is_valid_email(email):
            raise ValidationError("Please provide a valid email address.")

        user = db.users.find_one({"email": email})
        if not user:
            raise NotFoundError("No account found for this email.")
        if user.get("email_verified"):
            return jsonify({"message": "This email is already verified.", "verified": True})

        result = dispatch_verification_code(email)
        if not result.get("success"):
            raise EmailDeliveryError(
                "We could not send the verification email. Please try again in a moment.",
                {"reason": result.get("error")},
            )

        return jsonify(
            {
                "message": "Verification code sent.",
                "email": email,
                **verification_response_fields(result.get("expires_at")),
            }
        )

    @app.route("/api/auth/verify-email", methods=["POST"])
    def verify_email():
        payload = get_json_payload()
        email = normalize_email(payload.get("email"))
        otp = str(payload.get("otp") or payload.get("code") or "").strip()

        if not is_valid_email(email):
            raise ValidationError("Please provide a valid email address.")
        if not (otp.isdigit() and len(otp) == otp_code_length):
            raise ValidationError(f"The verification code must be {otp_code_length} digits.")

        code_record = email_verification_collection.find_one({"email": email})
        if not code_record:
            raise ValidationError(
                "No verification request found for this email. Please request a new code."
            )

        expires_at = code_record.get("expires_at")
        if not expires_at or expires_at < utcnow():
            email_verification_collection.delete_one({"_id": code_record["_id"]})
            raise ValidationError("The verification code has expired. Please request a new one.")

        if not check_secret(otp, code_record.get("otp_hash")):
            failed_attempts = int(code_record.get("failed_attempts", 0) or 0) + 1
            if failed_attempts >= max_failed_otp_attempts:
                email_verification_collection.delete_one({"_id": code_record["_id"]})
                raise ValidationError(
                    "Too many incorrect attempts. Please request a new verification code."
                )
            email_verification_collection.update_one(
                {"_id": code_record["_id"]},
                {"$set": {"failed_attempts": failed_attempts}},
            )
            raise ValidationError(
                "The verification code is incorrect.",
                {"attempts_remaining": max_failed_otp_attempts - failed_attempts},
            )

        email_verification_collection.delete_one({"_id": code_record["_id"]})

        verified_at = utcnow()
        update_result = db.users.update_one(
            {"email": email},
            {"$set": {"email_verified": True, "verified_at": verified_at, "updated_at": verified_at}},
        )
        if update_result.matched_count == 0:
            app.logger.warning(
                "Verification code accepted for %s but no matching user record was updated.",
                email,
            )

        record_audit_log(email, "Verified email address")

        return jsonify(
            {
                "message": "Email verified successfully.",
                "verified": True,
                "verified_at": isoformat(verified_at),
            }
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = get_json_payload()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            raise ValidationError("Email and password are required.")

        user = db.users.find_one({"email": email})
        if not user or not check_secret(password, user.get("password")):
            raise AuthenticationError("Invalid credentials.")

        if user.get("is_active", True) is False:
            raise AuthorizationError("This account has been deactivated.")
        if not user.get("email_verified"):
            raise AuthorizationError(
                "Please verify your email before logging in.",
                {"requires_verification": True},
            )

        updates: Dict[str, object] = {"last_login_at": utcnow()}
        if email == default_admin_email and user.get("role") != ROLE_ADMIN:
            updates["role"] = ROLE_ADMIN
        db.users.update_one({"_id": user["_id"]}, {"$set": updates})
        user = db.users.find_one({"_id": user["_id"]})

        token = create_access_token(
            identity=str(user["_id"]), additional_claims={"role": get_user_role(user)}
        )

        record_audit_log(
            email,
            "Signed in",
            {"ip": request.headers.get("X-Forwarded-For", request.remote_addr)},
        )

        return jsonify({"access_token": token, "user": serialize_user_profile(user)})

    @app.route("/api/auth/forgot-password", methods=["POST"])
    def forgot_password():
        payload = get_json_payload()
        email = normalize_email(payload.get("email"))
        generic_message = {"message": "If this email exists, a reset code has been sent."}

        if not is_valid_email(email):
            return jsonify(generic_message), 200

        user = db.users.find_one({"email": email})
        if user and user.get("is_active", True) is not False:
            otp = begin_password_reset(user)
            sent, error_details = emails.send_password_reset_email(
                email, otp, password_reset_expiration_minutes
            )
            if not sent:
                app.logger.error(
                    "Password reset email delivery failed for %s: %s",
                    email,
                    error_details or "Unknown delivery error",
                )

        return jsonify(generic_message), 200

    @app.route("/api/auth/reset-password", methods=["POST"])
    def reset_password():
        payload = get_json_payload()
        email = normalize_email(payload.get("email"))
        otp = str(payload.get("otp") or payload.get("code") or "").strip()
        new_password = str(payload.get("new_password", ""))

        if not email or not otp or not new_password:
            raise ValidationError("Email, reset code, and new password are required.")

        invalid_code = ValidationError("Invalid or expired reset code.")
        user = db.users.find_one({"email": email})
        if not user or not user.get("password_reset_otp_hash"):
            raise invalid_code

        expires_at = user.get("password_reset_otp_expiration")
        if not expires_at or expires_at < utcnow():
            clear_password_reset_state(user["_id"])
            raise invalid_code

        if not check_secret(otp, user.get("password_reset_otp_hash")):
            failed_attempts = int(user.get("password_reset_failed_attempts", 0) or 0) + 1
            if failed_attempts >= max_failed_otp_attempts:
                clear_password_reset_state(user["_id"])
            else:
                db.users.update_one(
                    {"_id": user["_id"]},
                    {"$set": {"password_reset_failed_attempts": failed_attempts}},
                )
            raise invalid_code

        validate_password(new_password)

        db.users.update_one(
            {"_id": user["_id"]},
            {
                "$set": {"password": hash_secret(new_password), "updated_at": utcnow()},
                "$unset": {
                    "password_reset_otp_hash": "",
                    "password_reset_otp_expiration": "",
                    "password_reset_failed_attempts": "",
                },
            },
        )

        record_audit_log(email, "Reset password via code", {"context": "password_reset"})

        return jsonify({"message": "Password successfully reset."}), 200

    # --- Account ---

    @app.route("/api/account", methods=["GET", "PUT"])
    @jwt_required()
    def manage_account():
        user = load_current_user()

        if request.method == "GET":
            return jsonify({"user": serialize_user_profile(user)})

        payload = get_json_payload()
        updates: Dict[str, object] = {}

        if "name" in payload:
            name = " ".join(str(payload.get("name") or "").split())
            if not name:
                raise ValidationError("Name cannot be empty.")
            if len(name) > 100:
                raise ValidationError("Name must be 100 characters or fewer.")
            updates["name"] = name

        if "phone" in payload:
            phone = str(payload.get("phone") or "").strip()
            if phone and not re.fullmatch(r"[0-9+()\-\s]{5,30}", phone):
                raise ValidationError("Please provide a valid phone number.")
            updates["phone"] = phone

        if "shipping_address" in payload:
            address_payload = payload.get("shipping_address")
            if address_payload:
                updates["shipping_address"] = require_complete_address(
                    address_payload, "Shipping address"
                )
            else:
                updates["shipping_address"] = {}

        if not updates:
            raise ValidationError("No changes were provided.")

        updates["updated_at"] = utcnow()
        db.users.update_one({"_id": user["_id"]}, {"$set": updates})
        updated_user = db.users.find_one({"_id": user["_id"]})

        record_audit_log(
            user.get("email"),
            "Updated account profile",
            {"fields": ",".join(sorted(key for key in updates if key != "updated_at"))},
        )

        return jsonify(
            {"message": "Account updated successfully.", "user": serialize_user_profile(updated_user)}
        )

    @app.route("/api/account/change-password", methods=["POST"])
    @jwt_required()
    def change_password():
        user = load_current_user()
        payload = get_json_payload()
        current_password = str(payload.get("current_password", ""))
        new_password = str(payload.get("new_password", ""))

        if not current_password or not new_password:
            raise ValidationError("Current and new password are required.")
        if not check_secret(current_password, user.get("password")):
            raise AuthenticationError("Current password is incorrect.")
        if current_password == new_password:
            raise ValidationError("The new password must be different from the current one.")
        validate_password(new_password)

        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"password": hash_secret(new_password), "updated_at": utcnow()}},
        )
        record_audit_log(user.get("email"), "Changed password")

        return jsonify({"message": "Password updated successfully."})

    @app.route("/api/account/deactivate", methods=["POST"])
    @jwt_required()
    def deactivate_account():
        user = load_current_user()
        payload = get_json_payload()
        password = str(payload.get("password", ""))

        if not check_secret(password, user.get("password")):
            raise AuthenticationError("Password is incorrect.")
        if normalize_email(user.get("email")) == default_admin_email:
            raise ValidationError("The default administrator account cannot be deactivated.")

        now = utcnow()
        db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"is_active": False, "deactivated_at": now, "updated_at": now}},
        )
        db.carts.delete_one({"user_id": user["_id"]})

        record_audit_log(
            user.get("email"),
            "Deactivated account",
            {"reason": str(payload.get("reason") or "")[:200]},
        )

        return jsonify({"message": "Your account has been deactivated."})

    # --- Categories ---

    def validate_category_payload(payload: Dict, existing=None) -> Dict[str, object]:
        fields: Dict[str, object] = {}
        if existing is None or "name" in payload:
            name = " ".join(str(payload.get("name") or "").split())
            if len(name) < 2 or len(name) > 100:
                raise ValidationError("Please provide a category name between 2 and 100 characters.")
            slug = slugify(name)
            conflict_query: Dict[str, object] = {"slug": slug}
            if existing is not None:
                conflict_query["_id"] = {"$ne": existing["_id"]}
            if db.categories.find_one(conflict_query):
                raise ConflictError("A category with this name already exists.")
            fields["name"] = name
            fields["slug"] = slug
        if "description" in payload:
            description = str(payload.get("description") or "").strip()
            if len(description) > 1000:
                raise ValidationError("Description must be 1000 characters or fewer.")
            fields["description"] = description
        return fields

    @app.route("/api/categories", methods=["GET"])
    def list_categories_route():
        cache_key = "catalog:categories"
        cached = catalog_cache.get(cache_key)
        if cached is not None:
            return jsonify(cached)

        product_counts = build_category_product_counts()
        categories = [
            serialize_category(document, product_counts=product_counts)
            for document in db.categories.find().sort("name", 1)
        ]
        body = {"categories": categories}
        catalog_cache.set(cache_key, body)
        return jsonify(body)

    @app.route("/api/categories/<slug>", methods=["GET"])
    def get_category_route(slug: str):
        category_document = resolve_category(slug)
        if not category_document:
            raise NotFoundError("Category not found.")

        page, limit = parse_pagination()
        query = {"category_id": category_document["_id"], "is_active": True}
        total = db.products.count_documents(query)
        products = list(
            db.products.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return jsonify(
            {
                "category": serialize_category(
                    category_document, product_counts={category_document["_id"]: total}
                ),
                "products": serialize_products(products),
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/categories", methods=["POST"])
    @jwt_required()
    def create_category_route():
        current_user = require_admin_user()
        fields = validate_category_payload(get_json_payload())

        now = utcnow()
        category_document = {
            **fields,
            "description": fields.get("description", ""),
            "created_by": normalize_email(current_user.get("email")),
            "created_at": now,
            "updated_at": now,
        }
        try:
            insert_result = db.categories.insert_one(category_document)
        except DuplicateKeyError:
            raise ConflictError("A category with this name already exists.")
        category_document["_id"] = insert_result.inserted_id
        invalidate_catalog_cache()

        record_audit_log(
            current_user.get("email"),
            "Created category",
            {"category_id": str(insert_result.inserted_id), "name": fields["name"]},
        )

        return (
            jsonify(
                {
                    "message": "Category created successfully.",
                    "category": serialize_category(category_document, product_counts={}),
                }
            ),
            201,
        )

    @app.route("/api/categories/<category_id>", methods=["PUT"])
    @jwt_required()
    def update_category_route(category_id: str):
        current_user = require_admin_user()
        category_object_id = parse_object_id(category_id, "category")
        category_document = db.categories.find_one({"_id": category_object_id})
        if not category_document:
            raise NotFoundError("Category not found.")

        fields = validate_category_payload(get_json_payload(), existing=category_document)
        if not fields:
            raise ValidationError("No changes were provided.")
        fields["updated_at"] = utcnow()
        try:
            updated = db.categories.find_one_and_update(
                {"_id": category_object_id},
                {"$set": fields},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise ConflictError("A category with this name already exists.")
        invalidate_catalog_cache()

        record_audit_log(
            current_user.get("email"),
            "Updated category",
            {"category_id": category_id, "name": updated.get("name", "")},
        )

        return jsonify(
            {
                "message": "Category updated successfully.",
                "category": serialize_category(updated, build_category_product_counts()),
            }
        )

    @app.route("/api/categories/<category_id>", methods=["DELETE"])
    @jwt_required()
    def delete_category_route(category_id: str):
        current_user = require_admin_user()
        category_object_id = parse_object_id(category_id, "category")

        category_document = db.categories.find_one({"_id": category_object_id})
        if not category_document:
            raise NotFoundError("Category not found.")

        product_count = db.products.count_documents(
            {"category_id": category_object_id, "is_active": True}
        )
        if product_count:
            raise ConflictError(
                "Cannot delete a category that still has products.",
                {"product_count": product_count},
            )

        db.categories.delete_one({"_id": category_object_id})
        db.products.update_many(
            {"category_id": category_object_id}, {"$set": {"category_id": None}}
        )
        invalidate_catalog_cache()

        record_audit_log(
            current_user.get("email"),
            "Deleted category",
            {"category_id": category_id, "name": category_document.get("name", "")},
        )

        return jsonify(
            {
                "message": f'"{category_document.get("name", "Category")}" has been removed from the catalog.',
                "category": {"id": category_id},
            }
        )

    # --- Products ---

    def validate_product_payload(payload: Dict, existing=None) -> Dict[str, object]:
        creating = existing is None
        fields: Dict[str, object] = {}

        if creating or "name" in payload:
            name = " ".join(str(payload.get("name") or "").split())
            if not name or len(name) > 200:
                raise ValidationError("Product name is required (200 characters max).")
            fields["name"] = name

        if creating or "sku" in payload:
            sku = str(payload.get("sku") or "").strip().upper()
            if not sku or len(sku) > 64 or not re.fullmatch(r"[A-Z0-9][A-Z0-9._-]*", sku):
                raise ValidationError(
                    "SKU is required and may contain only letters, digits, dots, dashes and underscores."
                )
            conflict_query: Dict[str, object] = {"sku": sku}
            if not creating:
                conflict_query["_id"] = {"$ne": existing["_id"]}
            if db.products.find_one(conflict_query):
                raise ConflictError("A product with this SKU already exists.")
            fields["sku"] = sku

        if creating or "price" in payload:
            price = parse_amount(payload.get("price"), "Price")
            if price <= 0:
                raise ValidationError("Price must be greater than zero.")
            fields["price"] = price

        if "compare_at_price" in payload:
            raw_compare = payload.get("compare_at_price")
            fields["compare_at_price"] = (
                None
                if raw_compare in (None, "")
                else parse_amount(raw_compare, "Compare-at price")
            )

        effective_price = fields.get("price", (existing or {}).get("price"))
        compare_at_price = fields.get("compare_at_price", (existing or {}).get("compare_at_price"))
        if compare_at_price is not None and compare_at_price <= safe_float(effective_price, 0.0):
            raise ValidationError("Compare-at price must be greater than the price.")

        if creating or "stock" in payload:
            stock = parse_strict_int(payload.get("stock", 0), "Stock")
            if stock < 0:
                raise ValidationError("Stock cannot be negative.")
            fields["stock"] = stock

        if creating or "category_id" in payload:
            category_document = resolve_category(payload.get("category_id"))
            if not category_document:
                raise ValidationError("Category does not exist.")
            fields["category_id"] = category_document["_id"]

        if "description" in payload:
            description = str(payload.get("description") or "").strip()
            if len(description) > 5000:
                raise ValidationError("Description must be 5000 characters or fewer.")
            fields["description"] = description

        if "images" in payload:
            images = payload.get("images") or []
            if not isinstance(images, list) or not all(isinstance(url, str) for url in images):
                raise ValidationError("Images must be a list of URLs.")
            fields["images"] = [url.strip() for url in images if url.strip()][:20]

        if "is_featured" in payload:
            fields["is_featured"] = bool(payload.get("is_featured"))
        if not creating and "is_active" in payload:
            fields["is_active"] = bool(payload.get("is_active"))

        if "name" in fields:
            slug = slugify(fields["name"])
            slug_query: Dict[str, object] = {"slug": slug}
            if not creating:
                slug_query["_id"] = {"$ne": existing["_id"]}
            if db.products.find_one(slug_query):
                slug = f"{slug}-{slugify(fields.get('sku') or (existing or {}).get('sku'))}"
            fields["slug"] = slug

        return fields

    @app.route("/api/products", methods=["GET"])
    def list_products():
        cache_key = cache_key_for_request("catalog:products")
        cached = catalog_cache.get(cache_key)
        if cached is not None:
            return jsonify(cached)

        page, limit = parse_pagination()
        query: Dict[str, object] = {"is_active": True}

        category_param = request.args.get("category")
        if category_param:
            category_document = resolve_category(category_param)
            query["category_id"] = (
                category_document["_id"] if category_document else {"$in": []}
            )

        price_filter: Dict[str, float] = {}
        min_price = safe_float(request.args.get("min_price"), None)
        max_price = safe_float(request.args.get("max_price"), None)
        if min_price is not None:
            price_filter["$gte"] = min_price
        if max_price is not None:
            price_filter["$lte"] = max_price
        if price_filter:
            query["price"] = price_filter

        if parse_bool_arg(request.args.get("in_stock")):
            query["stock"] = {"$gt": 0}
        featured = parse_bool_arg(request.args.get("featured"))
        if featured is not None:
            query["is_featured"] = featured

        search_term = (request.args.get("q") or "").strip()
        if search_term:
            query["name"] = re.compile(re.escape(search_term[:100]), re.IGNORECASE)

        sort_field = PRODUCT_SORT_FIELDS.get(
            (request.args.get("sort") or "created_at").strip().lower(), "created_at"
        )
        direction = 1 if (request.args.get("order") or "").strip().lower() == "asc" else -1

        total = db.products.count_documents(query)
        products = list(
            db.products.find(query)
            .sort([(sort_field, direction), ("_id", direction)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        body = {
            "products": serialize_products(products),
            "pagination": build_pagination(page, limit, total),
        }
        catalog_cache.set(cache_key, body)
        return jsonify(body)

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document = fetch_product(product_id)
        return jsonify({"product": serialize_product(product_document)})

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        current_user = require_admin_user()
        fields = validate_product_payload(get_json_payload())

        now = utcnow()
        product_document = {
            "description": "",
            "images": [],
            "compare_at_price": None,
            "is_featured": False,
            **fields,
            "is_active": True,
            "average_rating": 0.0,
            "review_count": 0,
            "created_by": normalize_email(current_user.get("email")),
            "created_at": now,
            "updated_at": now,
        }
        try:
            insert_result = db.products.insert_one(product_document)
        except DuplicateKeyError:
            raise ConflictError("A product with this SKU already exists.")
        product_document["_id"] = insert_result.inserted_id
        invalidate_catalog_cache()

        record_audit_log(
            current_user.get("email"),
            "Created product",
            {
                "product_id": str(insert_result.inserted_id),
                "product_name": product_document["name"],
                "sku": product_document["sku"],
            },
        )

        return (
            jsonify(
                {
                    "message": "Product created successfully.",
                    "product": serialize_product(product_document),
                }
            ),
            201,
        )

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        current_user = require_admin_user()
        product_document = fetch_product(product_id, active_only=False)
        fields = validate_product_payload(get_json_payload(), existing=product_document)
        if not fields:
            raise ValidationError("No changes were provided.")

        fields["updated_at"] = utcnow()
        try:
            updated_product = db.products.find_one_and_update(
                {"_id": product_document["_id"]},
                {"$set": fields},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise ConflictError("A product with this SKU already exists.")
        invalidate_catalog_cache()

        record_audit_log(
            current_user.get("email"),
            "Updated product",
            {
                "product_id": product_id,
                "product_name": updated_product.get("name", ""),
                "fields": ",".join(sorted(key for key in fields if key != "updated_at")),
            },
        )

        return jsonify(
            {
                "message": "Product updated successfully.",
                "product": serialize_product(updated_product),
            }
        )

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        current_user = require_admin_user()
        product_document = fetch_product(product_id, active_only=False)
        product_object_id = product_document["_id"]

        referenced = db.orders.count_documents({"items.product_id": product_object_id}) > 0
        if referenced:
            db.products.update_one(
                {"_id": product_object_id},
                {"$set": {"is_active": False, "updated_at": utcnow()}},
            )
        else:
            db.products.delete_one({"_id": product_object_id})
            db.wishlist_items.delete_many({"product_id": product_object_id})
            db.reviews.delete_many({"product_id": product_object_id})
        db.carts.update_many({}, {"$pull": {"items": {"product_id": product_object_id}}})
        invalidate_catalog_cache()

        record_audit_log(
            current_user.get("email"),
            "Archived product" if referenced else "Deleted product",
            {"product_id": product_id, "product_name": product_document.get("name", "")},
        )

        return jsonify(
            {
                "message": "Product archived because it appears on existing orders."
                if referenced
                else "Product removed successfully.",
                "soft_deleted": referenced,
            }
        )

    # --- Cart ---

    def load_cart_items(user_id: ObjectId) -> List[Dict]:
        cart_document = db.carts.find_one({"user_id": user_id}) or {}
        return [dict(item) for item in cart_document.get("items") or []]

    def save_cart_items(user_id: ObjectId, items: List[Dict]):
        now = utcnow()
        db.carts.update_one(
            {"user_id": user_id},
            {"$set": {"items": items, "updated_at": now}, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )

    def serialize_cart(user_id: ObjectId) -> Dict[str, object]:
        items = load_cart_items(user_id)
        products = fetch_products_by_ids(item["product_id"] for item in items)
        lines: List[Dict] = []
        for item in items:
            product_document = products.get(item["product_id"])
            if not product_document:
                continue
            quantity = safe_positive_int(item.get("quantity"), 0)
            stock = int(product_document.get("stock", 0) or 0)
            is_active = product_document.get("is_active", True) is not False
            price = round_money(product_document.get("price"))
            lines.append(
                {
                    "product_id": str(product_document["_id"]),
                    "name": product_document.get("name", ""),
                    "sku": product_document.get("sku", ""),
                    "image": (product_document.get("images") or [""])[0],
                    "price": price,
                    "quantity": quantity,
                    "line_total": line_total(price, quantity),
                    "stock": stock,
                    "available": is_active and stock >= quantity,
                    "added_at": isoformat(item.get("added_at")),
                }
            )
        totals = calculate_totals(lines)
        return {"items": lines, **totals}

    def validate_cart_quantity(product_document, quantity: int):
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1.")
        if quantity > MAX_CART_LINE_QUANTITY:
            raise ValidationError(
                f"You can add at most {MAX_CART_LINE_QUANTITY} units of a product to your cart."
            )
        stock = int(product_document.get("stock", 0) or 0)
        if quantity > stock:
            raise ValidationError(
                f"Only {stock} units of {product_document.get('name', 'this product')} are in stock.",
                {"available": stock},
            )

    @app.route("/api/cart", methods=["GET"])
    @jwt_required()
    def get_cart():
        user = load_current_user()
        return jsonify({"cart": serialize_cart(user["_id"])})

    @app.route("/api/cart", methods=["POST"])
    @jwt_required()
    def add_to_cart():
        user = load_current_user()
        payload = get_json_payload()
        product_document = fetch_product(payload.get("product_id"))
        quantity = parse_strict_int(payload.get("quantity", 1), "Quantity")
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1.")

        items = load_cart_items(user["_id"])
        existing = next(
            (item for item in items if item["product_id"] == product_document["_id"]), None
        )
        if existing is None and len(items) >= MAX_CART_LINES:
            raise ValidationError(f"Your cart can hold at most {MAX_CART_LINES} different products.")

        new_quantity = quantity + (existing or {}).get("quantity", 0)
        validate_cart_quantity(product_document, new_quantity)
        if existing is not None:
            existing["quantity"] = new_quantity
        else:
            items.append(
                {"product_id": product_document["_id"], "quantity": new_quantity, "added_at": utcnow()}
            )
        save_cart_items(user["_id"], items)

        return jsonify({"message": "Added to cart.", "cart": serialize_cart(user["_id"])})

    @app.route("/api/cart/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_cart_item(product_id: str):
        user = load_current_user()
        product_object_id = parse_object_id(product_id, "product")
        quantity = parse_strict_int(get_json_payload().get("quantity"), "Quantity")
        if quantity < 0:
            raise ValidationError("Quantity cannot be negative.")

        items = load_cart_items(user["_id"])
        existing = next((item for item in items if item["product_id"] == product_object_id), None)
        if existing is None:
            raise NotFoundError("This product is not in your cart.")

        if quantity == 0:
            items.remove(existing)
            message = "Removed from cart."
        else:
            validate_cart_quantity(fetch_product(product_object_id), quantity)
            existing["quantity"] = quantity
            message = "Cart updated."
        save_cart_items(user["_id"], items)

        return jsonify({"message": message, "cart": serialize_cart(user["_id"])})

    @app.route("/api/cart/<product_id>", methods=["DELETE"])
    @jwt_required()
    def remove_cart_item(product_id: str):
        user = load_current_user()
        product_object_id = parse_object_id(product_id, "product")
        items = load_cart_items(user["_id"])
        remaining = [item for item in items if item["product_id"] != product_object_id]
        if len(remaining) == len(items):
            raise NotFoundError("This product is not in your cart.")
        save_cart_items(user["_id"], remaining)

        return jsonify({"message": "Removed from cart.", "cart": serialize_cart(user["_id"])})

    @app.route("/api/cart", methods=["DELETE"])
    @jwt_required()
    def clear_cart():
        user = load_current_user()
        save_cart_items(user["_id"], [])
        return jsonify({"message": "Cart cleared.", "cart": serialize_cart(user["_id"])})

    # --- Wishlist ---

    @app.route("/api/wishlist", methods=["GET"])
    @jwt_required()
    def get_wishlist():
        user = load_current_user()
        page, limit = parse_pagination()
        query = {"user_id": user["_id"]}
        total = db.wishlist_items.count_documents(query)
        entries = list(
            db.wishlist_items.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        products = fetch_products_by_ids(entry["product_id"] for entry in entries)
        category_map = fetch_categories_by_ids(
            document.get("category_id") for document in products.values()
        )
        items = []
        for entry in entries:
            product_document = products.get(entry["product_id"])
            if not product_document:
                continue
            items.append(
                {
                    "id": str(entry["_id"]),
                    "product_id": str(entry["product_id"]),
                    "product": serialize_product(product_document, category_map),
                    "added_at": isoformat(entry.get("created_at")),
                }
            )
        return jsonify({"items": items, "pagination": build_pagination(page, limit, total)})

    @app.route("/api/wishlist", methods=["POST"])
    @jwt_required()
    def add_to_wishlist():
        user = load_current_user()
        product_document = fetch_product(get_json_payload().get("product_id"))

        duplicate_query = {"user_id": user["_id"], "product_id": product_document["_id"]}
        if db.wishlist_items.find_one(duplicate_query):
            raise ConflictError("This product is already in your wishlist.")
        if db.wishlist_items.count_documents({"user_id": user["_id"]}) >= MAX_WISHLIST_ITEMS:
            raise ValidationError(f"Your wishlist can hold at most {MAX_WISHLIST_ITEMS} products.")

        entry = {**duplicate_query, "created_at": utcnow()}
        try:
            insert_result = db.wishlist_items.insert_one(entry)
        except DuplicateKeyError:
            raise ConflictError("This product is already in your wishlist.")

        return (
            jsonify(
                {
                    "message": "Added to wishlist.",
                    "item": {
                        "id": str(insert_result.inserted_id),
                        "product_id": str(product_document["_id"]),
                        "product": serialize_product(product_document),
                        "added_at": isoformat(entry["created_at"]),
                    },
                }
            ),
            201,
        )

    @app.route("/api/wishlist/<product_id>", methods=["DELETE"])
    @jwt_required()
    def remove_from_wishlist(product_id: str):
        user = load_current_user()
        product_object_id = parse_object_id(product_id, "product")
        result = db.wishlist_items.delete_one(
            {"user_id": user["_id"], "product_id": product_object_id}
        )
        if not result.deleted_count:
            raise NotFoundError("This product is not in your wishlist.")
        return jsonify({"message": "Removed from wishlist."})

    # --- Reviews ---

    def recalculate_product_rating(product_id: ObjectId):
        pipeline = [
            {"$match": {"product_id": product_id}},
            {
                "$group": {
                    "_id": "$product_id",
                    "average": {"$avg": "$rating"},
                    "count": {"$sum": 1},
                }
            },
        ]
        summary = next(iter(db.reviews.aggregate(pipeline)), None) or {}
        db.products.update_one(
            {"_id": product_id},
            {
                "$set": {
                    "average_rating": round(safe_float(summary.get("average"), 0.0), 2),
                    "review_count": int(summary.get("count", 0) or 0),
                }
            },
        )
        invalidate_catalog_cache()

    def rating_distribution(product_id: ObjectId) -> Dict[str, int]:
        distribution = {str(star): 0 for star in range(1, 6)}
        pipeline = [
            {"$match": {"product_id": product_id}},
            {"$group": {"_id": "$rating", "count": {"$sum": 1}}},
        ]
        for entry in db.reviews.aggregate(pipeline):
            key = str(entry.get("_id"))
            if key in distribution:
                distribution[key] = int(entry.get("count", 0))
        return distribution

    def fetch_review(review_id: str):
        review_document = db.reviews.find_one({"_id": parse_object_id(review_id, "review")})
        if not review_document:
            raise NotFoundError("Review not found.")
        return review_document

    @app.route("/api/reviews", methods=["GET"])
    def list_reviews():
        product_param = request.args.get("product_id")
        if not product_param:
            raise ValidationError("product_id is required.")
        product_document = fetch_product(product_param, active_only=False)
        product_object_id = product_document["_id"]

        page, limit = parse_pagination(default_limit=10, max_limit=50)
        query: Dict[str, object] = {"product_id": product_object_id}
        rating_param = request.args.get("rating")
        if rating_param:
            rating = parse_strict_int(rating_param, "Rating")
            if rating < 1 or rating > 5:
                raise ValidationError("Rating filter must be between 1 and 5.")
            query["rating"] = rating

        sort_name = (request.args.get("sort") or "newest").strip().lower()
        if sort_name not in REVIEW_SORTS:
            raise ValidationError(
                "Unknown sort order.", {"allowed": sorted(REVIEW_SORTS)}
            )

        total = db.reviews.count_documents(query)
        reviews = list(
            db.reviews.find(query)
            .sort(REVIEW_SORTS[sort_name] + [("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        user_names = {
            document["_id"]: document.get("name", "")
            for document in db.users.find(
                {"_id": {"$in": list({review["user_id"] for review in reviews})}},
                {"name": 1},
            )
        }

        return jsonify(
            {
                "reviews": [serialize_review(review, user_names) for review in reviews],
                "summary": {
                    "average_rating": round(
                        safe_float(product_document.get("average_rating"), 0.0), 2
                    ),
                    "review_count": int(product_document.get("review_count", 0) or 0),
                    "distribution": rating_distribution(product_object_id),
                },
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/reviews", methods=["POST"])
    @jwt_required()
    def create_review():
        user = load_current_user()
        payload = get_json_payload()
        product_document = fetch_product(payload.get("product_id"))

        rating = parse_strict_int(payload.get("rating"), "Rating")
        if rating < 1 or rating > 5:
            raise ValidationError("Rating must be between 1 and 5.")
        title = " ".join(str(payload.get("title") or "").split())
        if len(title) > 200:
            raise ValidationError("Title must be 200 characters or fewer.")
        comment = str(payload.get("comment") or "").strip()
        if len(comment) < 10 or len(comment) > 1000:
            raise ValidationError("Comment must be between 10 and 1000 characters.")

        duplicate_query = {"user_id": user["_id"], "product_id": product_document["_id"]}
        if db.reviews.find_one(duplicate_query):
            raise ConflictError("You have already reviewed this product.")

        verified_purchase = (
            db.orders.count_documents(
                {
                    "user_id": user["_id"],
                    "items.product_id": product_document["_id"],
                    "status": {"$in": [PROCESSING, SHIPPED, DELIVERED]},
                }
            )
            > 0
        )
        review_document = {
            **duplicate_query,
            "rating": rating,
            "title": title,
            "comment": comment,
            "helpful_count": 0,
            "helpful_user_ids": [],
            "verified_purchase": verified_purchase,
            "created_at": utcnow(),
        }
        try:
            insert_result = db.reviews.insert_one(review_document)
        except DuplicateKeyError:
            raise ConflictError("You have already reviewed this product.")
        review_document["_id"] = insert_result.inserted_id
        recalculate_product_rating(product_document["_id"])

        record_audit_log(
            user.get("email"),
            "Posted review",
            {"product_id": str(product_document["_id"]), "rating": rating},
        )

        return (
            jsonify(
                {
                    "message": "Thank you for your review.",
                    "review": serialize_review(review_document, {user["_id"]: user.get("name", "")}),
                }
            ),
            201,
        )

    @app.route("/api/reviews/<review_id>", methods=["DELETE"])
    @jwt_required()
    def delete_review(review_id: str):
        user = load_current_user()
        review_document = fetch_review(review_id)
        if review_document.get("user_id") != user["_id"] and get_user_role(user) != ROLE_ADMIN:
            raise AuthorizationError("You can only delete your own reviews.")

        db.reviews.delete_one({"_id": review_document["_id"]})
        recalculate_product_rating(review_document["product_id"])

        record_audit_log(
            user.get("email"),
            "Deleted review",
            {"review_id": review_id, "product_id": str(review_document["product_id"])},
        )
        return jsonify({"message": "Review deleted."})

    @app.route("/api/reviews/<review_id>/helpful", methods=["POST"])
    @jwt_required()
    def mark_review_helpful(review_id: str):
        user = load_current_user()
        review_document = fetch_review(review_id)
        if review_document.get("user_id") == user["_id"]:
            raise ValidationError("You cannot mark your own review as helpful.")
        if user["_id"] in (review_document.get("helpful_user_ids") or []):
            raise ConflictError("You have already marked this review as helpful.")

        updated = db.reviews.find_one_and_update(
            {"_id": review_document["_id"], "helpful_user_ids": {"$ne": user["_id"]}},
            {"$inc": {"helpful_count": 1}, "$addToSet": {"helpful_user_ids": user["_id"]}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise ConflictError("You have already marked this review as helpful.")

        return jsonify(
            {
                "message": "Thanks for your feedback.",
                "helpful_count": int(updated.get("helpful_count", 0) or 0),
            }
        )

    # --- Orders ---

    def normalize_requested_items(raw_items) -> List[Dict]:
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError("Order items must be a non-empty list.")
        requested: List[Dict] = []
        for entry in raw_items:
            if not isinstance(entry, dict):
                raise ValidationError("Each order item must be an object.")
            product_object_id = parse_object_id(entry.get("product_id"), "product")
            quantity = parse_strict_int(entry.get("quantity", 1), "Quantity")
            if quantity < 1:
                raise ValidationError("Quantity must be at least 1.")
            requested.append({"product_id": product_object_id, "quantity": quantity})
        merged = merge_line_quantities(requested)
        if len(merged) > MAX_CART_LINES:
            raise ValidationError(f"An order can contain at most {MAX_CART_LINES} products.")
        for line in merged:
            if line["quantity"] > MAX_CART_LINE_QUANTITY:
                raise ValidationError(
                    f"You can order at most {MAX_CART_LINE_QUANTITY} units of a product."
                )
        return merged

    def build_order_lines(requested: List[Dict]) -> List[Dict]:
        """Price each line from the catalog; client-supplied prices are ignored."""
        products = fetch_products_by_ids(line["product_id"] for line in requested)
        lines: List[Dict] = []
        for line in requested:
            product_document = products.get(line["product_id"])
            if not product_document or product_document.get("is_active", True) is False:
                raise NotFoundError(f"Product with ID {line['product_id']} not found.")
            price = round_money(product_document.get("price"))
            lines.append(
                {
                    "product_id": product_document["_id"],
                    "name": product_document.get("name", ""),
                    "sku": product_document.get("sku", ""),
                    "price": price,
                    "quantity": line["quantity"],
                    "line_total": line_total(price, line["quantity"]),
                }
            )
        return lines

    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        user = load_current_user()
        payload = get_json_payload()

        from_cart = payload.get("items") is None
        if from_cart:
            cart_items = load_cart_items(user["_id"])
            if not cart_items:
                raise ValidationError("Your cart is empty.")
            requested = normalize_requested_items(
                [
                    {"product_id": item["product_id"], "quantity": item.get("quantity", 1)}
                    for item in cart_items
                ]
            )
        else:
            requested = normalize_requested_items(payload.get("items"))

        shipping_address = require_complete_address(
            payload.get("shipping_address") or user.get("shipping_address"), "Shipping address"
        )
        billing_payload = payload.get("billing_address")
        billing_address = (
            require_complete_address(billing_payload, "Billing address")
            if billing_payload
            else dict(shipping_address)
        )
        notes = str(payload.get("notes") or "").strip()
        if len(notes) > 1000:
            raise ValidationError("Notes must be 1000 characters or fewer.")

        lines = build_order_lines(requested)
        totals = calculate_totals(lines)
        reserve_stock(db, lines)

        now = utcnow()
        order_document = {
            "order_number": generate_order_number(),
            "user_id": user["_id"],
            "customer": {"name": user.get("name", ""), "email": normalize_email(user.get("email"))},
            "items": lines,
            "subtotal": totals["subtotal"],
            "total": totals["total"],
            "total_items": totals["total_items"],
            "currency": store_currency,
            "status": PENDING,
            "payment_status": PENDING,
            "shipping_address": shipping_address,
            "billing_address": billing_address,
            "notes": notes,
            "tracking_number": "",
            "stock_reserved": True,
            "status_history": [history_entry(PENDING, normalize_email(user.get("email")))],
            "created_at": now,
            "updated_at": now,
        }
        try:
            insert_result = db.orders.insert_one(order_document)
        except Exception:
            release_stock(db, lines)
            raise
        order_document["_id"] = insert_result.inserted_id

        if from_cart:
            save_cart_items(user["_id"], [])
        invalidate_order_cache()
        invalidate_catalog_cache()

        app.logger.info(
            "Order %s created for %s (%s %.2f)",
            order_document["order_number"],
            user.get("email"),
            store_currency,
            order_document["total"],
        )
        record_audit_log(
            user.get("email"),
            "Placed order",
            {
                "order_id": str(insert_result.inserted_id),
                "order_number": order_document["order_number"],
                "total": order_document["total"],
            },
        )

        return (
            jsonify({"message": "Order created.", "order": serialize_order(order_document)}),
            201,
        )

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        user = load_current_user()
        staff = is_staff(user)
        cache_key = cache_key_for_request("orders:list", "staff" if staff else user["_id"])
        cached = order_cache.get(cache_key)
        if cached is not None:
            return jsonify(cached)

        page, limit = parse_pagination()
        query: Dict[str, object] = {}
        if staff:
            user_filter = request.args.get("user_id")
            if user_filter:
                query["user_id"] = parse_object_id(user_filter, "user")
        else:
            query["user_id"] = user["_id"]

        status_filter = request.args.get("status")
        if status_filter:
            status_value = normalize_status(status_filter)
            if status_value not in ORDER_STATUSES:
                raise ValidationError("Unknown order status.", {"allowed": list(ORDER_STATUSES)})
            query["status"] = status_value
        payment_status_filter = request.args.get("payment_status")
        if payment_status_filter:
            payment_status_value = normalize_status(payment_status_filter)
            if payment_status_value not in PAYMENT_STATUSES:
                raise ValidationError(
                    "Unknown payment status.", {"allowed": list(PAYMENT_STATUSES)}
                )
            query["payment_status"] = payment_status_value

        start_date = parse_iso_date(request.args.get("start_date"))
        end_date = parse_iso_date(request.args.get("end_date"), end_of_day=True)
        if start_date or end_date:
            created_filter: Dict[str, object] = {}
            if start_date:
                created_filter["$gte"] = start_date
            if end_date:
                created_filter["$lt"] = end_date
            query["created_at"] = created_filter

        sort_field = (request.args.get("sort_by") or "created_at").strip().lower()
        if sort_field not in ORDER_SORT_FIELDS:
            sort_field = "created_at"
        direction = 1 if (request.args.get("order") or "").strip().lower() == "asc" else -1

        total = db.orders.count_documents(query)
        orders = list(
            db.orders.find(query)
            .sort([(sort_field, direction), ("_id", direction)])
            .skip((page - 1) * limit)
            .limit(limit)
        )

        status_counts = {status: 0 for status in ORDER_STATUSES}
        total_value = 0.0
        for entry in db.orders.aggregate(
            [
                {"$match": query},
                {"$group": {"_id": "$status", "count": {"$sum": 1}, "value": {"$sum": "$total"}}},
            ]
        ):
            status_counts[entry["_id"]] = int(entry.get("count", 0))
            total_value += safe_float(entry.get("value"), 0.0)

        body = {
            "orders": [serialize_order(document) for document in orders],
            "pagination": build_pagination(page, limit, total),
            "meta": {
                "total_value": round_money(total_value),
                "average_order_value": round_money(total_value / total) if total else 0.0,
                "status_counts": status_counts,
            },
        }
        order_cache.set(cache_key, body)
        return jsonify(body)

    @app.route("/api/orders/<order_identifier>", methods=["GET"])
    @jwt_required()
    def get_order_detail(order_identifier: str):
        user = load_current_user()
        cache_key = f"orders:detail:{order_identifier}"
        serialized = order_cache.get(cache_key)
        if serialized is None:
            order_document = fetch_order(order_identifier)
            serialized = serialize_order(order_document, include_payments=True)
            order_cache.set(cache_key, serialized)

        if serialized["user_id"] != str(user["_id"]) and not is_staff(user):
            raise AuthorizationError("You do not have access to this order.")

        return jsonify({"order": serialized})

    @app.route("/api/orders/<order_identifier>", methods=["PUT"])
    @jwt_required()
    def update_order(order_identifier: str):
        current_user = require_role(ROLE_MODERATOR)
        actor_email = normalize_email(current_user.get("email"))
        order_document = fetch_order(order_identifier)
        payload = get_json_payload()

        extra_fields: Dict[str, object] = {}
        if "tracking_number" in payload:
            tracking_number = str(payload.get("tracking_number") or "").strip()
            if len(tracking_number) > 100:
                raise ValidationError("Tracking number must be 100 characters or fewer.")
            extra_fields["tracking_number"] = tracking_number
        if "notes" in payload:
            notes = str(payload.get("notes") or "").strip()
            if len(notes) > 1000:
                raise ValidationError("Notes must be 1000 characters or fewer.")
            extra_fields["notes"] = notes

        requested_status = payload.get("status")
        status_changed = bool(
            requested_status
            and normalize_status(requested_status) != order_document.get("status")
        )
        if not status_changed and not extra_fields:
            raise ValidationError("No changes were provided.")

        if status_changed:
            updated_order = transition_order_status(
                order_document, requested_status, actor_email, extra_fields
            )
            if updated_order["status"] == CANCELLED:
                cancel_pending_payments(updated_order["_id"], actor_email)
                updated_order = db.orders.find_one({"_id": updated_order["_id"]})
            notify_order_status(updated_order)
        else:
            extra_fields["updated_at"] = utcnow()
            updated_order = db.orders.find_one_and_update(
                {"_id": order_document["_id"]},
                {"$set": extra_fields},
                return_document=ReturnDocument.AFTER,
            )
            invalidate_order_cache()

        record_audit_log(
            actor_email,
            "Updated order",
            {
                "order_id": str(order_document["_id"]),
                "order_number": order_document.get("order_number"),
                "from_status": order_document.get("status"),
                "to_status": updated_order.get("status"),
            },
        )

        return jsonify(
            {"message": "Order updated successfully.", "order": serialize_order(updated_order)}
        )

    @app.route("/api/orders/<order_identifier>", methods=["DELETE"])
    @jwt_required()
    def cancel_order(order_identifier: str):
        user = load_current_user()
        actor_email = normalize_email(user.get("email"))
        order_document = fetch_order(order_identifier)
        ensure_order_access(order_document, user, staff_allowed=False)

        current_status = order_document.get("status")
        restore_pending = order_document.get("stock_reserved") and order_document.get(
            "stock_restore_pending"
        )
        if current_status == CANCELLED and restore_pending:
            restore_order_stock(order_document["_id"])
            invalidate_order_cache()
            updated_order = db.orders.find_one({"_id": order_document["_id"]})
            return jsonify(
                {"message": "Order cancelled successfully.", "order": serialize_order(updated_order)}
            )
        if current_status not in CUSTOMER_CANCELLABLE_STATUSES:
            raise ValidationError(f"Order cannot be cancelled in {current_status} status.")

        updated_order = transition_order_status(order_document, CANCELLED, actor_email)
        cancel_pending_payments(updated_order["_id"], actor_email)
        updated_order = db.orders.find_one({"_id": updated_order["_id"]})
        if updated_order.get("payment_status") == SUCCEEDED:
            app.logger.info(
                "Order %s cancelled after payment; refund must be issued by an administrator.",
                updated_order.get("order_number"),
            )
        notify_order_status(updated_order)

        record_audit_log(
            actor_email,
            "Cancelled order",
            {
                "order_id": str(updated_order["_id"]),
                "order_number": updated_order.get("order_number"),
                "from_status": current_status,
            },
        )

        return jsonify(
            {"message": "Order cancelled successfully.", "order": serialize_order(updated_order)}
        )

    # --- Payments ---

    def fetch_payment(payment_id: str):
        payment_document = db.payments.find_one({"_id": parse_object_id(payment_id, "payment")})
        if not payment_document:
            raise NotFoundError("Payment not found.")
        return payment_document

    def ensure_payment_access(payment_document, user_document, *, staff_allowed: bool = True):
        if payment_document.get("user_id") == user_document.get("_id"):
            return
        role = get_user_role(user_document)
        if role == ROLE_ADMIN or (staff_allowed and role in STAFF_ROLES):
            return
        raise AuthorizationError("You do not have access to this payment.")

    def payment_response(payment_document, message: str, status_code: int = 200, **extra):
        order_document = db.orders.find_one({"_id": payment_document.get("order_id")}) or {}
        body = {
            "message": message,
            "payment": serialize_payment(payment_document),
            "order_status": order_document.get("status"),
            "order_payment_status": order_document.get("payment_status"),
            **extra,
        }
        return jsonify(body), status_code

    @app.route("/api/payments", methods=["POST"])
    @jwt_required()
    def create_payment():
        user = load_current_user()
        actor_email = normalize_email(user.get("email"))
        payload = get_json_payload()
        order_document = fetch_order(payload.get("order_id"))
        ensure_order_access(order_document, user, staff_allowed=False)

        if order_document.get("status") != PENDING:
            raise ValidationError("Only pending orders can be paid.")

        in_flight = db.payments.find_one(
            {
                "order_id": order_document["_id"],
                "status": {"$in": list(IN_FLIGHT_PAYMENT_STATUSES)},
            }
        )
        if in_flight:
            if in_flight.get("status") == SUCCEEDED:
                raise ConflictError("This order has already been paid.")
            raise ConflictError(
                "A payment is already in progress for this order.",
                {"payment_id": str(in_flight["_id"])},
            )

        attempt = db.payments.count_documents({"order_id": order_document["_id"]}) + 1
        amount = round_money(order_document.get("total"))
        currency = order_document.get("currency") or store_currency
        intent = payment_gateway().create_payment_intent(
            to_minor_units(amount),
            metadata={
                "order_id": str(order_document["_id"]),
                "order_number": order_document.get("order_number", ""),
                "user_id": str(user["_id"]),
            },
            idempotency_key=f"order-{order_document['_id']}-attempt-{attempt}",
            currency=currency,
        )

        now = utcnow()
        payment_document = {
            "order_id": order_document["_id"],
            "user_id": user["_id"],
            "amount": amount,
            "amount_minor": to_minor_units(amount),
            "currency": currency,
            "status": PENDING,
            "stripe_payment_intent_id": intent["id"],
            "refunded_amount": 0.0,
            "status_history": [{"status": PENDING, "changed_at": now}],
            "created_at": now,
            "updated_at": now,
        }
        try:
            insert_result = db.payments.insert_one(payment_document)
        except DuplicateKeyError:
            raise ConflictError("A payment is already in progress for this order.")
        payment_document["_id"] = insert_result.inserted_id

        db.orders.update_one(
            {"_id": order_document["_id"]},
            {"$set": {"payment_status": PENDING, "updated_at": now}},
        )
        invalidate_order_cache()

        record_audit_log(
            actor_email,
            "Started payment",
            {
                "payment_id": str(insert_result.inserted_id),
                "order_id": str(order_document["_id"]),
                "amount": amount,
            },
        )

        return payment_response(
            payment_document,
            "Payment created.",
            201,
            client_secret=intent.get("client_secret"),
        )

    @app.route("/api/payments/confirm", methods=["POST"])
    @jwt_required()
    def confirm_payment():
        user = load_current_user()
        payload = get_json_payload()
        intent_id = str(payload.get("payment_intent_id") or "").strip()
        if intent_id:
            payment_document = db.payments.find_one({"stripe_payment_intent_id": intent_id})
            if not payment_document:
                raise NotFoundError("Payment not found.")
        elif payload.get("payment_id"):
            payment_document = fetch_payment(payload.get("payment_id"))
        else:
            raise ValidationError("payment_intent_id is required.")
        ensure_payment_access(payment_document, user, staff_allowed=False)

        if payment_document.get("status") in (SUCCEEDED, REFUNDED):
            return payment_response(payment_document, "Payment already processed.")

        intent = payment_gateway().retrieve_payment_intent(
            payment_document["stripe_payment_intent_id"]
        )
        payment_document, _ = apply_intent_status(
            payment_document, intent, normalize_email(user.get("email"))
        )

        messages = {
            SUCCEEDED: "Payment confirmed.",
            FAILED: "Payment failed.",
            CANCELLED: "Payment was cancelled.",
        }
        message = messages.get(payment_document.get("status"), "Payment is still processing.")
        return payment_response(payment_document, message, intent_status=intent.get("status"))

    @app.route("/api/payments/<payment_id>", methods=["GET"])
    @jwt_required()
    def get_payment(payment_id: str):
        user = load_current_user()
        payment_document = fetch_payment(payment_id)
        ensure_payment_access(payment_document, user)
        return payment_response(payment_document, "Payment loaded.")

    @app.route("/api/payments/<payment_id>/refund", methods=["POST"])
    @jwt_required()
    def refund_payment(payment_id: str):
        current_user = require_admin_user()
        actor_email = normalize_email(current_user.get("email"))
        payment_document = fetch_payment(payment_id)
        if payment_document.get("status") != SUCCEEDED:
            raise ValidationError("Only succeeded payments can be refunded.")

        payload = get_json_payload()
        payment_amount = round_money(payment_document.get("amount"))
        refund_amount = payment_amount
        if payload.get("amount") not in (None, ""):
            refund_amount = parse_amount(payload.get("amount"), "Refund amount")
            if refund_amount <= 0 or refund_amount > payment_amount:
                raise ValidationError(
                    f"Refund amount must be greater than zero and at most {payment_amount:.2f}."
                )
        reason = str(payload.get("reason") or "").strip().lower() or None
        if reason and reason not in REFUND_REASONS:
            raise ValidationError("Unknown refund reason.", {"allowed": sorted(REFUND_REASONS)})

        refund = payment_gateway().create_refund(
            payment_document["stripe_payment_intent_id"],
            amount_minor=to_minor_units(refund_amount),
            reason=reason,
            idempotency_key=f"refund-{payment_document['_id']}",
        )

        updated_payment = transition_payment(
            payment_document,
            REFUNDED,
            {
                "refunded_amount": refund_amount,
                "refund_id": refund.get("id"),
                "refund_reason": reason or "",
                "refunded_at": utcnow(),
            },
        )
        if updated_payment is None:
            raise ConflictError("The payment was updated by another request.")

        order_document = apply_payment_refund(updated_payment["order_id"], actor_email)
        app.logger.info(
            "Refunded %.2f on payment %s", refund_amount, updated_payment["_id"]
        )
        record_audit_log(
            actor_email,
            "Refunded payment",
            {
                "payment_id": payment_id,
                "order_id": str(updated_payment["order_id"]),
                "amount": refund_amount,
                "reason": reason,
            },
        )

        return payment_response(
            updated_payment,
            "Payment refunded.",
            order=serialize_order(order_document),
        )

    @app.route("/api/payments/<payment_id>/cancel", methods=["POST"])
    @jwt_required()
    def cancel_payment(payment_id: str):
        user = load_current_user()
        actor_email = normalize_email(user.get("email"))
        payment_document = fetch_payment(payment_id)
        ensure_payment_access(payment_document, user, staff_allowed=False)
        if payment_document.get("status") != PENDING:
            raise ValidationError("Only pending payments can be cancelled.")

        payment_gateway().cancel_payment_intent(payment_document["stripe_payment_intent_id"])
        updated_payment = transition_payment(payment_document, CANCELLED)
        if updated_payment is None:
            updated_payment = db.payments.find_one({"_id": payment_document["_id"]})
            return payment_response(updated_payment, "Payment already processed.")

        mirror_payment_status_on_order(updated_payment["order_id"], CANCELLED)
        record_audit_log(
            actor_email,
            "Payment cancelled",
            {"payment_id": payment_id, "order_id": str(updated_payment["order_id"])},
        )
        return payment_response(updated_payment, "Payment cancelled.")

    @app.route("/api/payments/webhook", methods=["POST"])
    def stripe_webhook():
        event = payment_gateway().verify_webhook(
            request.get_data(), request.headers.get("Stripe-Signature")
        )
        event_type = str(event.get("type") or "")
        data_object = (event.get("data") or {}).get("object") or {}
        app.logger.info("Stripe webhook %s (%s)", event_type, event.get("id"))

        if event_type.startswith("payment_intent."):
            intent_id = data_object.get("id")
        elif event_type == "charge.refunded":
            intent_id = data_object.get("payment_intent")
        else:
            return jsonify({"received": True, "handled": False})

        payment_document = db.payments.find_one({"stripe_payment_intent_id": intent_id})
        if not payment_document:
            app.logger.info("Webhook %s for unknown intent %s ignored", event_type, intent_id)
            return jsonify({"received": True, "handled": False})

        handled = False
        if event_type in (
            "payment_intent.succeeded",
            "payment_intent.payment_failed",
            "payment_intent.canceled",
        ):
            intent = dict(data_object)
            if event_type == "payment_intent.payment_failed":
                intent["status"] = "requires_payment_method"
                intent["last_payment_error"] = intent.get("last_payment_error") or {
                    "message": "The payment method was declined."
                }
            _, handled = apply_intent_status(payment_document, intent, None)
        elif event_type == "charge.refunded":
            if can_transition_payment(payment_document.get("status"), REFUNDED):
                updated_payment = transition_payment(
                    payment_document,
                    REFUNDED,
                    {
                        "refunded_amount": from_minor_units(data_object.get("amount_refunded")),
                        "refunded_at": utcnow(),
                    },
                )
                if updated_payment is not None:
                    apply_payment_refund(updated_payment["order_id"], None)
                    record_audit_log(
                        None,
                        "Payment refunded",
                        {
                            "payment_id": str(updated_payment["_id"]),
                            "order_id": str(updated_payment["order_id"]),
                        },
                    )
                    handled = True

        return jsonify({"received": True, "handled": handled})

    # --- Admin Routes ---

    @app.route("/api/admin/dashboard", methods=["GET"])
    @jwt_required()
    def admin_dashboard():
        require_role(ROLE_MODERATOR)

        orders_by_status = {status: 0 for status in ORDER_STATUSES}
        for entry in db.orders.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
            orders_by_status[entry["_id"]] = int(entry.get("count", 0))

        gross = 0.0
        refunded = 0.0
        for entry in db.payments.aggregate(
            [
                {"$match": {"status": {"$in": [SUCCEEDED, REFUNDED]}}},
                {
                    "$group": {
                        "_id": "$status",
                        "amount": {"$sum": "$amount"},
                        "refunded": {"$sum": "$refunded_amount"},
                    }
                },
            ]
        ):
            gross += safe_float(entry.get("amount"), 0.0)
            refunded += safe_float(entry.get("refunded"), 0.0)

        low_stock_products = list(
            db.products.find({"is_active": True, "stock": {"$lte": LOW_STOCK_THRESHOLD}})
            .sort([("stock", 1), ("name", 1)])
            .limit(10)
        )
        recent_orders = list(db.orders.find().sort([("created_at", -1), ("_id", -1)]).limit(5))

        return jsonify(
            {
                "stats": {
                    "total_users": db.users.count_documents({}),
                    "active_users": db.users.count_documents({"is_active": {"$ne": False}}),
                    "total_products": db.products.count_documents({"is_active": True}),
                    "total_orders": db.orders.count_documents({}),
                    "pending_orders": orders_by_status[PENDING],
                    "total_revenue": round_money(gross - refunded),
                    "refunded_amount": round_money(refunded),
                },
                "orders_by_status": orders_by_status,
                "low_stock_products": [
                    {
                        "id": str(product["_id"]),
                        "name": product.get("name", ""),
                        "sku": product.get("sku", ""),
                        "stock": int(product.get("stock", 0) or 0),
                    }
                    for product in low_stock_products
                ],
                "recent_orders": [serialize_order(order) for order in recent_orders],
            }
        )

    def serialize_inventory_item(product_document, threshold: int) -> Dict[str, object]:
        stock = int(product_document.get("stock", 0) or 0)
        return {
            "id": str(product_document["_id"]),
            "name": product_document.get("name", ""),
            "sku": product_document.get("sku", ""),
            "stock": stock,
            "price": round_money(product_document.get("price")),
            "is_active": product_document.get("is_active", True) is not False,
            "low_stock": stock <= threshold,
            "updated_at": isoformat(product_document.get("updated_at")),
        }

    @app.route("/api/admin/inventory", methods=["GET"])
    @jwt_required()
    def admin_inventory():
        require_role(ROLE_MODERATOR)
        page, limit = parse_pagination(default_limit=50, max_limit=200)
        threshold_param = request.args.get("threshold")
        threshold = (
            parse_strict_int(threshold_param, "Threshold")
            if threshold_param
            else LOW_STOCK_THRESHOLD
        )

        query: Dict[str, object] = {}
        if parse_bool_arg(request.args.get("low_stock")):
            query["stock"] = {"$lte": threshold}
        search_term = (request.args.get("q") or "").strip()
        if search_term:
            regex = re.compile(re.escape(search_term[:100]), re.IGNORECASE)
            query["$or"] = [{"name": regex}, {"sku": regex}]

        total = db.products.count_documents(query)
        products = list(
            db.products.find(query)
            .sort([("stock", 1), ("name", 1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )

        return jsonify(
            {
                "products": [serialize_inventory_item(product, threshold) for product in products],
                "summary": {
                    "low_stock_count": db.products.count_documents(
                        {"is_active": True, "stock": {"$lte": threshold}}
                    ),
                    "out_of_stock_count": db.products.count_documents(
                        {"is_active": True, "stock": {"$lte": 0}}
                    ),
                    "threshold": threshold,
                },
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/admin/inventory/<product_id>", methods=["PUT"])
    @jwt_required()
    def admin_update_inventory(product_id: str):
        current_user = require_admin_user()
        product_object_id = parse_object_id(product_id, "product")
        payload = get_json_payload()

        has_stock = payload.get("stock") is not None
        has_adjustment = payload.get("adjustment") is not None
        if has_stock == has_adjustment:
            raise ValidationError("Provide either 'stock' or 'adjustment'.")

        if has_stock:
            stock = parse_strict_int(payload.get("stock"), "Stock")
            product_document = set_stock(db, product_object_id, stock)
            change = {"stock": stock}
        else:
            adjustment = parse_strict_int(payload.get("adjustment"), "Adjustment")
            if adjustment == 0:
                raise ValidationError("Adjustment cannot be zero.")
            product_document = adjust_stock(db, product_object_id, adjustment)
            change = {"adjustment": adjustment}
        db.products.update_one({"_id": product_object_id}, {"$set": {"updated_at": utcnow()}})
        invalidate_catalog_cache()

        record_audit_log(
            current_user.get("email"),
            "Updated inventory",
            {
                "product_id": product_id,
                "product_name": product_document.get("name", ""),
                "new_stock": product_document.get("stock"),
                "reason": str(payload.get("reason") or "")[:200],
                **change,
            },
        )

        return jsonify(
            {
                "message": "Inventory updated.",
                "product": serialize_inventory_item(product_document, LOW_STOCK_THRESHOLD),
            }
        )

    def fetch_user(user_id: str):
        user_document = db.users.find_one({"_id": parse_object_id(user_id, "user")})
        if not user_document:
            raise NotFoundError("User not found.")
        return user_document

    @app.route("/api/admin/users", methods=["GET"])
    @jwt_required()
    def list_users():
        require_admin_user()
        page, limit = parse_pagination(default_limit=50, max_limit=200)

        query: Dict[str, object] = {}
        search_term = (request.args.get("q") or request.args.get("search") or "").strip()
        if search_term:
            regex = re.compile(re.escape(search_term[:100]), re.IGNORECASE)
            query["$or"] = [{"email": regex}, {"name": regex}]
        role_filter = (request.args.get("role") or "").strip().lower()
        if role_filter:
            if role_filter not in ALLOWED_USER_ROLES:
                raise ValidationError("Unknown role.", {"allowed": sorted(ALLOWED_USER_ROLES)})
            query["role"] = role_filter

        total = db.users.count_documents(query)
        users = (
            db.users.find(query)
            .sort([("created_at", -1), ("_id", -1)])
            .skip((page - 1) * limit)
            .limit(limit)
        )

        return jsonify(
            {
                "users": [serialize_admin_user(user) for user in users],
                "pagination": build_pagination(page, limit, total),
            }
        )

    @app.route("/api/admin/users/<user_id>/role", methods=["PUT"])
    @jwt_required()
    def update_user_role(user_id: str):
        admin_user = require_admin_user()
        desired_role = str(get_json_payload().get("role", "")).strip().lower()

        if desired_role not in ALLOWED_USER_ROLES:
            raise ValidationError("Role must be 'admin', 'moderator', or 'customer'.")

        user_to_update = fetch_user(user_id)
        target_email = normalize_email(user_to_update.get("email"))
        if target_email == default_admin_email and desired_role != ROLE_ADMIN:
            raise ValidationError("The default administrator must remain an admin.")

        db.users.update_one(
            {"_id": user_to_update["_id"]},
            {"$set": {"role": desired_role, "updated_at": utcnow()}},
        )
        updated_user = db.users.find_one({"_id": user_to_update["_id"]})

        record_audit_log(
            admin_user.get("email"),
            "Updated user role",
            {"target_email": target_email, "new_role": desired_role},
        )

        return jsonify(
            {"message": f"Role updated to {desired_role}.", "user": serialize_admin_user(updated_user)}
        )

    @app.route("/api/admin/users/<user_id>/status", methods=["PUT"])
    @jwt_required()
    def update_user_status(user_id: str):
        admin_user = require_admin_user()
        payload = get_json_payload()
        if not isinstance(payload.get("is_active"), bool):
            raise ValidationError("'is_active' must be true or false.")
        desired_state = payload["is_active"]

        user_to_update = fetch_user(user_id)
        target_email = normalize_email(user_to_update.get("email"))
        if not desired_state:
            if target_email == default_admin_email:
                raise ValidationError("The default administrator account cannot be deactivated.")
            if user_to_update["_id"] == admin_user["_id"]:
                raise ValidationError("You cannot deactivate your own account here.")

        now = utcnow()
        update_fields: Dict[str, object] = {"is_active": desired_state, "updated_at": now}
        update_fields["deactivated_at"] = None if desired_state else now
        db.users.update_one({"_id": user_to_update["_id"]}, {"$set": update_fields})
        updated_user = db.users.find_one({"_id": user_to_update["_id"]})

        record_audit_log(
            admin_user.get("email"),
            "Activated user" if desired_state else "Deactivated user",
            {"target_email": target_email},
        )

        return jsonify(
            {
                "message": "User activated." if desired_state else "User deactivated.",
                "user": serialize_admin_user(updated_user),
            }
        )

    @app.route("/api/admin/users/<user_id>", methods=["DELETE"])
    @jwt_required()
    def admin_delete_user(user_id: str):
        admin_user = require_admin_user()
        user_to_delete = fetch_user(user_id)

        target_email = normalize_email(user_to_delete.get("email"))
        if target_email == default_admin_email:
            raise ValidationError("The default administrator account cannot be deleted.")
        if user_to_delete["_id"] == admin_user["_id"]:
            raise ValidationError("You cannot delete your own account.")

        db.users.delete_one({"_id": user_to_delete["_id"]})
        db.carts.delete_one({"user_id": user_to_delete["_id"]})
        db.wishlist_items.delete_many({"user_id": user_to_delete["_id"]})
        email_verification_collection.delete_one({"email": target_email})

        record_audit_log(
            admin_user.get("email"),
            "Deleted user",
            {"target_email": target_email, "display_name": user_to_delete.get("name", "")},
        )

        display_name = user_to_delete.get("name") or "User"
        return jsonify(
            {
                "message": f"{display_name} has been removed from the directory.",
                "user": {"id": user_id},
            }
        )

    @app.route("/api/admin/logs", methods=["GET"])
    @jwt_required()
    def admin_list_logs():
        require_admin_user()

        search_term = (request.args.get("search") or "").strip()
        page, limit = parse_pagination(default_limit=50, max_limit=200)

        query: Dict[str, object] = {}
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [
                {"user_email": regex},
                {"user_name": regex},
                {"action": regex},
            ]

        start_date = parse_iso_date(request.args.get("start") or request.args.get("from"))
        end_date = parse_iso_date(
            request.args.get("end") or request.args.get("to"), end_of_day=True
        )
        if start_date or end_date:
            created_filter: Dict[str, object] = {}
            if start_date:
                created_filter["$gte"] = start_date
            if end_date:
                created_filter["$lt"] = end_date
            query["created_at"] = created_filter

        cursor = (
            audit_logs_collection.find(query)
            .sort("created_at", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        logs = [serialize_audit_log(document) for document in cursor]
        total = audit_logs_collection.count_documents(query)

        return jsonify({"logs": logs, "pagination": build_pagination(page, limit, total)})

    @app.route("/api/admin/logs", methods=["DELETE"])
    @jwt_required()
    def admin_delete_logs():
        admin_user = require_admin_user()

        payload = get_json_payload()
        start_date = parse_iso_date(payload.get("from") or payload.get("start"))
        end_date = parse_iso_date(payload.get("to") or payload.get("end"), end_of_day=True)

        delete_query: Dict[str, object] = {}
        if start_date or end_date:
            created_filter: Dict[str, object] = {}
            if start_date:
                created_filter["$gte"] = start_date
            if end_date:
                created_filter["$lt"] = end_date
            delete_query["created_at"] = created_filter

        result = audit_logs_collection.delete_many(delete_query)

        record_audit_log(
            admin_user.get("email"),
            "Deleted audit logs",
            {
                "count": str(result.deleted_count),
                "range": "filtered" if delete_query else "all",
            },
        )

        return jsonify(
            {
                "message": f"Removed {result.deleted_count} audit log entries.",
                "deleted": result.deleted_count,
            }
        )

    return app
