import os
import time
from typing import Dict, Optional

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from flask_cors import CORS
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix

from cars_arena import payments
from cars_arena.auth import (
    ADMIN_ROLE,
    GUEST_ROLE,
    TOKEN_LIFETIME,
    current_identity,
    init_jwt,
    issue_token,
    owner_from_query,
    owner_from_record,
    protected,
    require_admin,
    require_owner,
)
from cars_arena.database import (
    MongoJSONProvider,
    ensure_indexes,
    get_db,
    init_database,
    parse_object_id,
    ping,
    wait_for_database,
    write_result,
)
from cars_arena.errors import Conflict, InvalidRequest, register_error_handlers

load_dotenv()

PROFILE_FIELDS = ("education", "city", "phone", "linkedIn", "address")


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name, str(default))
    try:
        return int(raw_value)
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    raw_value = os.getenv(name, str(default))
    try:
        return float(raw_value)
    except (TypeError, ValueError):
        return default


def load_config(app: Flask, overrides: Optional[Dict] = None):
    app.config["JWT_SECRET_KEY"] = (
        os.getenv("JWT_SECRET_KEY")
        or os.getenv("ACCESS_TOKEN_SECRET")
        or "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = TOKEN_LIFETIME
    app.config["JWT_TOKEN_LOCATION"] = ["headers"]
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/cars-arena"
    )
    app.config["MONGO_TIMEOUT_MS"] = _env_int("MONGO_TIMEOUT_MS", 5000)
    app.config["DB_CONNECT_ATTEMPTS"] = _env_int("DB_CONNECT_ATTEMPTS", 5)
    app.config["DB_CONNECT_BACKOFF_SECONDS"] = _env_float("DB_CONNECT_BACKOFF_SECONDS", 0.5)
    app.config["STRIPE_SECRET_KEY"] = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
    app.config["STRIPE_API_BASE"] = os.getenv("STRIPE_API_BASE", "https://api.stripe.com")
    app.config["PAYMENT_CURRENCY"] = os.getenv("PAYMENT_CURRENCY", "usd")
    app.config["EXTERNAL_REQUEST_TIMEOUT"] = _env_float("EXTERNAL_REQUEST_TIMEOUT", 10.0)
    app.config["CORS_ALLOWED_ORIGINS"] = [
        origin.strip()
        for origin in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")
        if origin.strip()
    ]
    app.config["TRUSTED_PROXY_HOPS"] = max(0, _env_int("TRUSTED_PROXY_HOPS", 1))

    if overrides:
        app.config.update(overrides)


def json_object_body() -> Dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise InvalidRequest("A JSON object body is required.")
    return payload


def limit_from_query() -> int:
    """Optional ``limit`` query parameter; 0 means unbounded."""
    raw_limit = request.args.get("limit")
    if raw_limit is None:
        return 0
    try:
        limit = int(raw_limit)
    except ValueError:
        raise InvalidRequest("limit must be a positive integer.")
    if limit <= 0:
        raise InvalidRequest("limit must be a positive integer.")
    return limit


def create_app(config_overrides: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.json = MongoJSONProvider(app)

    load_config(app, config_overrides)

    trusted_proxy_hops = app.config["TRUSTED_PROXY_HOPS"]
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    CORS(app, origins=app.config["CORS_ALLOWED_ORIGINS"] or "*")

    init_jwt(app)
    db = init_database(app, database)
    ensure_indexes(db, app.logger)
    register_error_handlers(app)

    user_owns_query = require_owner(owner_from_query("email"))
    order_owner = owner_from_record("orders", id_arg="order_id")
    caller_owns_order = require_owner(order_owner)
    caller_owns_order_or_admin = require_owner(order_owner, allow_roles=(ADMIN_ROLE,))

    # --- Authentication ---

    @app.route("/getToken", methods=["POST"])
    def get_token():
        payload = request.get_json(silent=True)
        return jsonify({"accessToken": issue_token(payload)})

    # --- Catalogue and public reads ---

    @app.route("/", methods=["GET"])
    def index():
        return "Cars Arena Server Running!!!"

    @app.route("/health", methods=["GET"])
    def health():
        try:
            ping(get_db())
        except PyMongoError as exc:
            app.logger.warning("Health check failed: %s", exc)
            return jsonify({"status": "unavailable"}), 503
        return jsonify({"status": "ok"}), 200

    @app.route("/summary", methods=["GET"])
    def list_summary():
        return jsonify(list(get_db().summary.find({})))

    @app.route("/parts", methods=["GET"])
    def list_parts():
        cursor = get_db().parts.find({})
        limit = limit_from_query()
        if limit:
            cursor = cursor.limit(limit)
        return jsonify(list(cursor))

    @app.route("/parts/<part_id>", methods=["GET"])
    def get_part(part_id: str):
        object_id = parse_object_id(part_id)
        return jsonify(get_db().parts.find_one({"_id": object_id}))

    @app.route("/reviews", methods=["GET"])
    def list_reviews():
        cursor = get_db().reviews.find({}).sort("millTime", DESCENDING)
        limit = limit_from_query()
        if limit:
            cursor = cursor.limit(limit)
        return jsonify(list(cursor))

    @app.route("/admin/<email>", methods=["GET"])
    def check_admin(email: str):
        user = get_db().users.find_one({"email": email})
        return jsonify({"admin": bool(user) and user.get("role") == ADMIN_ROLE})

    # --- Users ---

    @app.route("/user", methods=["GET"])
    @protected(user_owns_query)
    def get_user():
        return jsonify(get_db().users.find_one({"email": current_identity().email}))

    @app.route("/user", methods=["POST"])
    def create_user():
        new_user = dict(json_object_body())
        new_user["role"] = GUEST_ROLE
        try:
            result = get_db().users.insert_one(new_user)
        except DuplicateKeyError:
            raise Conflict("User already exists.")
        return jsonify(write_result(result))

    @app.route("/user", methods=["PATCH"])
    @protected(user_owns_query)
    def update_user_profile():
        payload = json_object_body()
        updates = {field: payload[field] for field in PROFILE_FIELDS if field in payload}
        if not updates:
            raise InvalidRequest("No profile fields supplied.")

        result = get_db().users.update_one(
            {"email": current_identity().email}, {"$set": updates}
        )
        return jsonify(write_result(result))

    @app.route("/users", methods=["GET"])
    @protected(require_admin)
    def list_users():
        return jsonify(list(get_db().users.find({})))

    @app.route("/user/<user_id>", methods=["PATCH"])
    @protected(require_admin)
    def promote_user(user_id: str):
        object_id = parse_object_id(user_id)
        result = get_db().users.update_one(
            {"_id": object_id}, {"$set": {"role": ADMIN_ROLE}}
        )
        app.logger.info("%s promoted user %s to admin", current_identity().email, user_id)
        return jsonify(write_result(result))

    # --- Orders ---

    @app.route("/orders", methods=["GET"])
    @protected(user_owns_query)
    def list_orders():
        email = current_identity().email
        cursor = get_db().orders.find({"$or": [{"email": email}, {"owner": email}]})
        return jsonify(list(cursor))

    @app.route("/allOrders", methods=["GET"])
    @protected(require_admin)
    def list_all_orders():
        return jsonify(list(get_db().orders.find({})))

    @app.route("/order/<order_id>", methods=["GET"])
    @protected(caller_owns_order_or_admin)
    def get_order(order_id: str):
        return jsonify(g.owned_record)

    @app.route("/order", methods=["POST"])
    def create_order():
        """Place an order without a token.

        The stored ``email`` is not checked against any identity here, so any
        caller can place an order under any email. Reading, paying or deleting
        it later does require that email's token (or an admin for reads and
        deletes).
        """
        new_order = dict(json_object_body())
        new_order.setdefault("status", "pending")
        result = get_db().orders.insert_one(new_order)
        return jsonify(write_result(result))

    @app.route("/order/<order_id>", methods=["PATCH"])
    @protected(caller_owns_order)
    def confirm_order_payment(order_id: str):
        payment = json_object_body()
        transaction_id = payment.get("tId")
        if not transaction_id:
            raise InvalidRequest("A transaction id (tId) is required.")

        # Shipped orders never move back to paid.
        result = get_db().orders.update_one(
            {"_id": g.owned_record["_id"], "status": {"$ne": "shipped"}},
            {"$set": {"status": "paid", "tId": transaction_id}},
        )
        return jsonify(write_result(result))

    @app.route("/shipOrder/<order_id>", methods=["PATCH"])
    @protected(require_admin)
    def ship_order(order_id: str):
        object_id = parse_object_id(order_id)
        result = get_db().orders.update_one(
            {"_id": object_id}, {"$set": {"status": "shipped"}}
        )
        return jsonify(write_result(result))

    @app.route("/order/<order_id>", methods=["DELETE"])
    @protected(caller_owns_order_or_admin)
    def delete_order(order_id: str):
        result = get_db().orders.delete_one({"_id": g.owned_record["_id"]})
        return jsonify(write_result(result))

    # --- Payments ---

    @app.route("/create-payment-intent", methods=["POST"])
    @protected()
    def create_payment_intent():
        order = json_object_body()
        amount = payments.amount_from_price(order.get("price"))
        client_secret = payments.create_payment_intent(amount)
        return jsonify({"clientSecret": client_secret})

    # --- Parts ---

    @app.route("/parts", methods=["POST"])
    @protected(require_admin)
    def create_part():
        result = get_db().parts.insert_one(dict(json_object_body()))
        return jsonify(write_result(result))

    @app.route("/updateParts/<part_id>", methods=["PATCH"])
    @protected()
    def update_part_quantity(part_id: str):
        object_id = parse_object_id(part_id)
        payload = json_object_body()
        if "availableQuantity" not in payload:
            raise InvalidRequest("availableQuantity is required.")

        result = get_db().parts.update_one(
            {"_id": object_id},
            {"$set": {"availableQuantity": payload["availableQuantity"]}},
        )
        return jsonify(write_result(result))

    @app.route("/part/<part_id>", methods=["DELETE"])
    @protected(require_admin)
    def delete_part(part_id: str):
        object_id = parse_object_id(part_id)
        result = get_db().parts.delete_one({"_id": object_id})
        return jsonify(write_result(result))

    # --- Reviews and queries ---

    @app.route("/review", methods=["POST"])
    def create_review():
        review = dict(json_object_body())
        review.setdefault("millTime", int(time.time() * 1000))
        result = get_db().reviews.insert_one(review)
        return jsonify(write_result(result))

    @app.route("/query", methods=["POST"])
    def create_query():
        result = get_db()["query"].insert_one(dict(json_object_body()))
        return jsonify(write_result(result))

    return app


def main():
    app = create_app()
    with app.app_context():
        database = get_db()
    wait_for_database(
        database,
        app.config["DB_CONNECT_ATTEMPTS"],
        app.config["DB_CONNECT_BACKOFF_SECONDS"],
        app.logger,
    )
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
