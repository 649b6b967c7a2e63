import math
import os
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import urljoin

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager, get_jwt_identity, jwt_required
from flask_pymongo import PyMongo
from pymongo.errors import PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix

from audit_log import ensure_indexes as ensure_audit_indexes
from audit_log import list_audit_logs, record_audit_log
from carts import (
    add_item,
    cart_line_items,
    get_or_create_cart,
    priced_cart_lines,
    remove_item,
    serialize_cart,
    set_item_quantity,
)
from errors import (
    InvalidStatusTransitionError,
    ProductNotFoundError,
    StoreError,
    UserNotFoundError,
)
from notifications import send_order_confirmation_email
from order_lifecycle import SETTLED_STATES, OrderStatus
from orders import (
    DEFAULT_CURRENCY,
    attach_checkout_session,
    confirm_payment,
    count_orders_awaiting_shipment,
    create_order_from_cart,
    find_order,
    list_orders,
    list_user_orders,
    normalize_pagination,
    serialize_order,
    reconcile_stock_reductions,
    update_order_status,
)
from payment_config import get_payment_config, update_payment_config
from payments import (
    STRIPE_API_BASE,
    create_checkout_session,
    extract_checkout_session_id,
    extract_paid_order_reference,
    retrieve_checkout_session,
    session_confirms_payment,
)
from pricing import compute_totals
from products import (
    create_product,
    fetch_product,
    list_active_products,
    serialize_product,
    update_product,
)

load_dotenv()

DEFAULT_ADMIN_EMAIL = (os.getenv("DEFAULT_ADMIN_EMAIL") or "").strip().lower()
ALLOWED_USER_ROLES = {"admin", "standard"}
SETTLED_STATUS_VALUES = {status.value for status in SETTLED_STATES}


def create_app(config_overrides: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Honor proxy headers so checkout redirect URLs keep the public HTTPS origin.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    try:
        token_hours = int(os.getenv("JWT_ACCESS_TOKEN_EXPIRES_HOURS", "1"))
    except ValueError:
        token_hours = 1
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=token_hours)
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/storefront"
    )
    app.config["DEFAULT_ADMIN_EMAIL"] = DEFAULT_ADMIN_EMAIL
    app.config["STORE_CURRENCY"] = (
        os.getenv("STORE_CURRENCY", DEFAULT_CURRENCY).strip().lower() or DEFAULT_CURRENCY
    )
    app.config["STRIPE_SECRET_KEY"] = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
    app.config["STRIPE_API_BASE"] = os.getenv("STRIPE_API_BASE", STRIPE_API_BASE)
    app.config["PUBLIC_URL"] = (os.getenv("PUBLIC_URL") or "").strip()
    app.config["RESEND_ORDER_API_KEY"] = (os.getenv("RESEND_ORDER_API_KEY") or "").strip()
    app.config["ORDER_SENDER_EMAIL"] = (os.getenv("ORDER_SENDER_EMAIL") or "").strip()
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel((os.getenv("LOG_LEVEL") or "INFO").upper())

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        os.getenv("FRONTEND_URL", "").strip(),
        app.config["PUBLIC_URL"],
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    JWTManager(app)
    db = database if database is not None else PyMongo(app).db

    try:
        db.carts.create_index("user_id", unique=True)
        db.orders.create_index([("user_id", 1), ("created_at", -1)])
        db.orders.create_index("status")
        db.orders.create_index("order_number", unique=True)
        db.products.create_index("is_active")
        ensure_audit_indexes(db)
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes: %s", exc)

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def get_user_role(user_document) -> str:
        if not user_document:
            return "standard"

        email = normalize_email(user_document.get("email"))
        if email and email == app.config["DEFAULT_ADMIN_EMAIL"]:
            return "admin"

        role = str(user_document.get("role") or "").strip().lower()
        return role if role in ALLOWED_USER_ROLES else "standard"

    def load_current_user():
        current_email = normalize_email(get_jwt_identity())
        user_document = (
            db.users.find_one({"email": current_email}) if current_email else None
        )
        if not user_document:
            app.logger.warning("User %s not found in database", current_email)
            raise UserNotFoundError()
        return user_document

    def require_role(*roles: str):
        allowed = {role for role in roles if role}
        current_user = load_current_user()
        user_role = get_user_role(current_user)

        if user_role == "admin" or not allowed or user_role in allowed:
            return current_user, None

        return (
            None,
            (
                jsonify(
                    {"message": "You need additional permissions to perform this action."}
                ),
                403,
            ),
        )

    def require_admin_user():
        return require_role("admin")

    def build_cart_response(user_document):
        cart = get_or_create_cart(db, str(user_document["_id"]))
        lines = priced_cart_lines(db, cart)
        config = get_payment_config(db)
        totals = compute_totals(cart_line_items(lines), config)
        return {
            "cart": serialize_cart(cart, lines),
            "config": config.to_dict(),
            "totals": totals.to_dict(),
        }

    def notify_order_paid(order_document):
        api_key = app.config.get("RESEND_ORDER_API_KEY")
        if not api_key:
            return
        sent, error = send_order_confirmation_email(
            order_document,
            order_document.get("user_email"),
            api_key,
            app.config.get("ORDER_SENDER_EMAIL") or None,
        )
        if not sent:
            app.logger.warning(
                "Order confirmation for %s not sent: %s", order_document.get("_id"), error
            )

    # --- Error handlers ---

    @app.errorhandler(StoreError)
    def handle_store_error(exc: StoreError):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(PyMongoError)
    def handle_storage_error(exc: PyMongoError):
        app.logger.error("Storage error while handling %s: %s", request.path, exc)
        return jsonify({"message": "Internal server error"}), 500

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/api/products", methods=["GET"])
    def list_products_route():
        products = [serialize_product(document) for document in list_active_products(db)]
        return jsonify({"products": products})

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product_route(product_id: str):
        product_document = fetch_product(db, product_id)
        if not product_document:
            raise ProductNotFoundError(product_id)
        return jsonify({"product": serialize_product(product_document)})

    @app.route("/api/cart", methods=["GET"])
    @jwt_required()
    def get_cart():
        user_document = load_current_user()
        return jsonify(build_cart_response(user_document))

    @app.route("/api/cart/add", methods=["POST"])
    @jwt_required()
    def add_to_cart():
        user_document = load_current_user()
        payload = request.get_json(silent=True) or {}
        add_item(
            db,
            str(user_document["_id"]),
            payload.get("productId"),
            payload.get("quantity", 1),
        )
        return jsonify(build_cart_response(user_document))

    @app.route("/api/cart/update", methods=["POST"])
    @jwt_required()
    def update_cart_item():
        user_document = load_current_user()
        payload = request.get_json(silent=True) or {}
        set_item_quantity(
            db,
            str(user_document["_id"]),
            payload.get("productId"),
            payload.get("quantity"),
        )
        return jsonify(build_cart_response(user_document))

    @app.route("/api/cart/remove", methods=["POST"])
    @jwt_required()
    def remove_from_cart():
        user_document = load_current_user()
        payload = request.get_json(silent=True) or {}
        remove_item(db, str(user_document["_id"]), payload.get("productId"))
        return jsonify(build_cart_response(user_document))

    @app.route("/api/orders/create", methods=["POST"])
    @jwt_required()
    def create_order():
        user_document = load_current_user()
        order_document = create_order_from_cart(
            db, user_document, currency=app.config["STORE_CURRENCY"]
        )
        return (
            jsonify(
                {
                    "message": "Order created",
                    "orderId": str(order_document["_id"]),
                    "order": serialize_order(order_document),
                }
            ),
            201,
        )

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        user_document = load_current_user()
        orders = [
            serialize_order(document)
            for document in list_user_orders(db, str(user_document["_id"]))
        ]
        return jsonify({"orders": orders})

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order_detail(order_id: str):
        user_document = load_current_user()
        order_document = find_order(db, order_id)
        is_owner = order_document.get("user_id") == str(user_document["_id"])
        if not is_owner and get_user_role(user_document) != "admin":
            return jsonify({"message": "Forbidden"}), 403
        return jsonify({"order": serialize_order(order_document)})

    @app.route("/api/checkout", methods=["POST"])
    @jwt_required()
    def create_checkout():
        user_document = load_current_user()
        payload = request.get_json(silent=True) or {}
        order_id = str(payload.get("orderId") or "").strip()
        if not order_id:
            return jsonify({"message": "Order ID is required"}), 400

        order_document = find_order(db, order_id)
        if order_document.get("user_id") != str(user_document["_id"]):
            return jsonify({"message": "Forbidden"}), 403
        if order_document.get("status") != OrderStatus.PENDING.value:
            return jsonify({"message": "Order is not pending payment"}), 400

        public_url = app.config.get("PUBLIC_URL") or request.host_url
        checkout_session = create_checkout_session(
            order_document,
            success_url=urljoin(public_url, f"/checkout/success?orderId={order_id}"),
            cancel_url=urljoin(public_url, "/checkout/cancel"),
            secret_key=app.config.get("STRIPE_SECRET_KEY"),
            api_base=app.config.get("STRIPE_API_BASE") or STRIPE_API_BASE,
        )
        session_id = str(checkout_session.get("id") or "")
        if session_id:
            attach_checkout_session(db, order_document, session_id)
        return jsonify({"url": checkout_session.get("url"), "sessionId": session_id})

    @app.route("/api/stripe/webhook", methods=["POST"])
    def stripe_webhook():
        event = request.get_json(silent=True) or {}
        order_id = extract_paid_order_reference(event)
        if not order_id:
            app.logger.info("Stripe webhook: ignoring event %s", event.get("type"))
            return jsonify({"received": True, "status": "ignored"})

        # Already settled orders need no provider round trip.
        pending_order = find_order(db, order_id)
        if pending_order.get("status") in SETTLED_STATUS_VALUES:
            return jsonify({"received": True, "status": "already_paid"})

        session_id = extract_checkout_session_id(event)
        if not session_id:
            app.logger.warning("Stripe webhook: event for order %s has no session id", order_id)
            return jsonify({"received": True, "status": "ignored"})

        # Verify with Stripe instead of trusting the webhook payload.
        checkout_session = retrieve_checkout_session(
            session_id,
            app.config.get("STRIPE_SECRET_KEY"),
            app.config.get("STRIPE_API_BASE") or STRIPE_API_BASE,
        )
        if not session_confirms_payment(checkout_session, pending_order):
            app.logger.warning(
                "Stripe webhook: session %s does not confirm payment of order %s (%s)",
                session_id,
                order_id,
                checkout_session.get("payment_status"),
            )
            return jsonify({"received": True, "status": "ignored"})

        try:
            order_document, applied = confirm_payment(db, order_id)
        except InvalidStatusTransitionError as exc:
            app.logger.warning("Stripe webhook: order %s not payable: %s", order_id, exc)
            return jsonify({"received": True, "status": "ignored"})

        if not applied:
            return jsonify({"received": True, "status": "already_paid"})

        notify_order_paid(order_document)
        return jsonify({"received": True, "status": "ok"})

    # --- Admin Routes ---

    @app.route("/api/admin/payment-config", methods=["GET"])
    @jwt_required()
    def get_payment_config_route():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        return jsonify({"config": get_payment_config(db).to_dict()})

    @app.route("/api/admin/payment-config", methods=["POST"])
    @jwt_required()
    def update_payment_config_route():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True)
        config = update_payment_config(db, payload)
        record_audit_log(
            db,
            admin_user.get("email"),
            "Updated payment configuration",
            config.to_dict(),
        )
        return jsonify({"config": config.to_dict()})

    @app.route("/api/admin/products", methods=["POST"])
    @jwt_required()
    def create_product_route():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product_document = create_product(db, request.get_json(silent=True))
        record_audit_log(
            db,
            admin_user.get("email"),
            "Created product",
            {
                "product_id": str(product_document["_id"]),
                "title": product_document.get("title"),
            },
        )
        return (
            jsonify(
                {
                    "message": "Product added successfully.",
                    "product": serialize_product(product_document),
                }
            ),
            201,
        )

    @app.route("/api/admin/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product_route(product_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True)
        product_document = update_product(db, product_id, payload)
        record_audit_log(
            db,
            admin_user.get("email"),
            "Updated product",
            {"product_id": product_id, "fields": ", ".join(sorted(payload or {}))},
        )
        return jsonify({"product": serialize_product(product_document)})

    @app.route("/api/admin/orders", methods=["GET"])
    @jwt_required()
    def list_all_orders():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        documents, total, page, limit = list_orders(
            db,
            status_filter=request.args.get("status"),
            search=request.args.get("search"),
            page=request.args.get("page", 1),
            limit=request.args.get("limit", 15),
        )
        return jsonify(
            {
                "orders": [serialize_order(document) for document in documents],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": math.ceil(total / limit) if total else 0,
                },
            }
        )

    @app.route("/api/admin/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def admin_get_order(order_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        return jsonify({"order": serialize_order(find_order(db, order_id))})

    @app.route("/api/admin/orders/<order_id>/status", methods=["PATCH"])
    @jwt_required()
    def admin_update_order_status(order_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        payload = request.get_json(silent=True) or {}
        previous = find_order(db, order_id)
        order_document = update_order_status(db, order_id, payload.get("status"))
        record_audit_log(
            db,
            admin_user.get("email"),
            "Updated order status",
            {
                "order_id": order_id,
                "from": previous.get("status"),
                "to": order_document.get("status"),
            },
        )
        return jsonify(
            {
                "order": serialize_order(order_document),
                "message": "Order status updated successfully",
            }
        )

    @app.route("/api/admin/new-orders-count", methods=["GET"])
    @jwt_required()
    def new_orders_count():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error
        return jsonify({"count": count_orders_awaiting_shipment(db)})

    @app.route("/api/admin/orders/reconcile-stock", methods=["POST"])
    @jwt_required()
    def reconcile_stock_route():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        reconciled = reconcile_stock_reductions(db)
        if reconciled:
            record_audit_log(
                db,
                admin_user.get("email"),
                "Reconciled order stock",
                {"orders": reconciled},
            )
        return jsonify({"reconciled": reconciled})

    @app.route("/api/admin/logs", methods=["GET"])
    @jwt_required()
    def admin_list_logs():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        page, limit = normalize_pagination(
            request.args.get("page", 1), request.args.get("limit", 50)
        )
        return jsonify(
            list_audit_logs(db, search=request.args.get("search"), page=page, limit=limit)
        )

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
