import os
from datetime import datetime, timedelta
from typing import Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import (
    Flask,
    Response,
    jsonify,
    redirect,
    render_template,
    request,
    send_from_directory,
    url_for,
)
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_pymongo import PyMongo
from pymongo.errors import PyMongoError
from werkzeug.exceptions import NotFound
from werkzeug.middleware.proxy_fix import ProxyFix

from .auth import (
    AccountService,
    admin_required,
    current_principal,
    end_session,
    normalize_email,
    start_session,
)
from .catalogue import (
    list_recent_products,
    parse_filter_criteria,
    search_products,
    serialize_product,
)
from .errors import (
    AuthenticationError,
    DeleteError,
    InputError,
    NotFoundError,
    StorefrontError,
    UpstreamError,
)
from .ingestion import DEFAULT_ALLOWED_EXTENSIONS, ingest_product, parse_submission
from .sitemap import collect_sitemap_entries
from .storage import LocalObjectStore, StorageError, build_object_store

load_dotenv()

PACKAGE_ROOT = os.path.dirname(os.path.abspath(__file__))

SHOP_NAME = "Karla Shopping"
SHOP_TAGLINE = "Your favourite online shop!"
SHOP_FEATURES = [
    "Quality products",
    "Fast delivery",
    "24/7 customer service",
    "Secure payment",
]


def env_flag(name: str, default: bool) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def create_app(
    test_config: Optional[Dict] = None, database=None, object_store=None
) -> Flask:
    """Create and configure the Flask application.

    ``database`` and ``object_store`` replace the MongoDB connection and the
    configured storage backend, which is how the tests run the app.
    """
    app = Flask(__name__)

    # Honor proxy headers so generated image links keep the public HTTPS origin.
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
    secret_key = os.getenv("SECRET_KEY", "change-me-in-production")
    app.config["SECRET_KEY"] = secret_key
    app.config["JWT_SECRET_KEY"] = os.getenv("JWT_SECRET_KEY", secret_key)
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        hours=float(os.getenv("JWT_ACCESS_TOKEN_HOURS", "1"))
    )
    app.config["JWT_TOKEN_LOCATION"] = ["cookies", "headers"]
    app.config["JWT_COOKIE_SECURE"] = env_flag("JWT_COOKIE_SECURE", False)
    app.config["JWT_COOKIE_SAMESITE"] = "Lax"
    app.config["JWT_COOKIE_CSRF_PROTECT"] = True
    app.config["JWT_CSRF_CHECK_FORM"] = True
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/karla_shopping"
    )
    app.config["PRODUCTS_COLLECTION"] = os.getenv("PRODUCTS_COLLECTION", "data")
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "16"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["PRODUCT_ALLOWED_EXTENSIONS"] = set(DEFAULT_ALLOWED_EXTENSIONS)

    app.config["STORAGE_BACKEND"] = os.getenv("STORAGE_BACKEND", "local")
    app.config["STORAGE_ROOT"] = os.getenv(
        "STORAGE_ROOT", os.path.join(PACKAGE_ROOT, "storage")
    )
    app.config["STORAGE_CACHE_CONTROL"] = os.getenv("STORAGE_CACHE_CONTROL", "3600")
    app.config["STORAGE_TIMEOUT_SECONDS"] = os.getenv("STORAGE_TIMEOUT_SECONDS", "30")
    app.config["SUPABASE_URL"] = os.getenv("SUPABASE_URL", "")
    app.config["SUPABASE_SERVICE_KEY"] = os.getenv("SUPABASE_SERVICE_KEY", "")
    app.config["SUPABASE_BUCKET"] = os.getenv("SUPABASE_BUCKET", "images")
    app.config["UPLOAD_FOLDER_PREFIX"] = os.getenv("UPLOAD_FOLDER_PREFIX", "uploads")
    app.config["UPLOAD_CLEANUP_ON_FAILURE"] = env_flag("UPLOAD_CLEANUP_ON_FAILURE", True)
    app.config["PUBLIC_BASE_URL"] = os.getenv("PUBLIC_BASE_URL", "").strip()
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config["LOG_LEVEL"])

    # --- Initialize extensions ---
    allowed_origins = [
        os.getenv("FRONTEND_URL", "").strip(),
        app.config["PUBLIC_BASE_URL"],
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(
        app,
        resources={r"/api/*": {"origins": allowed_origins or "*"}},
        supports_credentials=True,
    )

    JWTManager(app)

    if database is None:
        database = PyMongo(app).db
    db = database
    products_collection = db[app.config["PRODUCTS_COLLECTION"]]
    audit_logs_collection = db.audit_logs
    accounts = AccountService(db)

    if object_store is None:
        object_store = build_object_store(app.config)

    try:
        db.users.create_index("email", unique=True)
    except Exception as exc:
        app.logger.warning("Unable to ensure unique index for users: %s", exc)

    try:
        audit_logs_collection.create_index([("created_at", -1)])
    except Exception as exc:
        app.logger.warning("Unable to ensure indexes for audit logs: %s", exc)

    # --- Helpers ---

    def wants_json() -> bool:
        if request.path.startswith("/api/"):
            return True
        best = request.accept_mimetypes.best_match(["text/html", "application/json"])
        return best == "application/json"

    def record_audit_log(actor_email: Optional[str], action: str, metadata=None):
        try:
            audit_logs_collection.insert_one(
                {
                    "user_email": normalize_email(actor_email) or None,
                    "action": action,
                    "metadata": {
                        str(key): str(value)
                        for key, value in (metadata or {}).items()
                        if value is not None
                    },
                    "created_at": datetime.utcnow(),
                }
            )
        except PyMongoError as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    def fetch_product(product_id: str):
        try:
            object_id = ObjectId(product_id)
        except (InvalidId, TypeError):
            raise InputError("Invalid product identifier.")

        try:
            product_document = products_collection.find_one({"_id": object_id})
        except PyMongoError as exc:
            raise UpstreamError(f"Product lookup failed: {exc}") from exc

        if not product_document:
            raise NotFoundError("Product not found.")
        return product_document

    def delete_product_document(product_document, actor_email: Optional[str]):
        product_id = product_document["_id"]
        try:
            result = products_collection.delete_one({"_id": product_id})
        except PyMongoError as exc:
            app.logger.error("Deleting product %s failed: %s", product_id, exc)
            raise DeleteError(str(exc)) from exc

        if result.deleted_count == 0:
            raise NotFoundError("Product not found.")

        storage_keys = [
            str(key) for key in product_document.get("storage_keys") or [] if key
        ]
        if storage_keys:
            try:
                object_store.remove(storage_keys)
            except StorageError as exc:
                app.logger.warning(
                    "Product %s deleted but its images remain in storage (%s): %s",
                    product_id,
                    exc,
                    ", ".join(storage_keys),
                )

        app.logger.info("Deleted product %s", product_id)
        record_audit_log(
            actor_email,
            "Deleted product",
            {"product_id": str(product_id), "product_title": product_document.get("title")},
        )

    def complete_sign_in(user_document, action: str):
        is_admin = accounts.is_admin(user_document["_id"])
        response = redirect(url_for("index"))
        start_session(response, user_document, is_admin)
        app.logger.info(
            "%s: %s (admin=%s)", action, user_document.get("email"), is_admin
        )
        record_audit_log(
            user_document.get("email"),
            action,
            {"ip": request.headers.get("X-Forwarded-For", request.remote_addr)},
        )
        return response

    def read_credentials():
        payload = request.form.to_dict() if request.form else {}
        if not payload:
            payload = request.get_json(silent=True) or {}
        return str(payload.get("email", "")), str(payload.get("password", ""))

    @app.context_processor
    def inject_session_context():
        principal = current_principal()
        return {
            "principal": principal,
            "is_admin": principal.is_admin,
            "csrf_token": request.cookies.get(
                app.config.get("JWT_ACCESS_CSRF_COOKIE_NAME", "csrf_access_token"), ""
            ),
            "shop_name": SHOP_NAME,
        }

    @app.errorhandler(StorefrontError)
    def handle_storefront_error(error: StorefrontError):
        if error.status_code >= 500:
            app.logger.error("%s %s failed: %s", request.method, request.path, error)
        if wants_json():
            return jsonify(error.to_dict()), error.status_code
        return (
            render_template(
                "error.html",
                title="Error",
                message=error.message,
                status_code=error.status_code,
            ),
            error.status_code,
        )

    @app.errorhandler(NotFound)
    def handle_not_found(error):
        if wants_json():
            return jsonify({"message": "Not found."}), 404
        return (
            render_template(
                "error.html", title="Not found", message="Page not found.", status_code=404
            ),
            404,
        )

    # --- ROUTES ---

    @app.route("/")
    def index():
        return render_template(
            "index.html",
            title=f"Welcome to {SHOP_NAME}",
            message=SHOP_TAGLINE,
            features=SHOP_FEATURES,
            products=[
                serialize_product(document)
                for document in list_recent_products(products_collection)
            ],
        )

    @app.route("/products")
    def products_page():
        return render_template("products.html", title="Our products")

    @app.route("/catalogue")
    def catalogue():
        criteria = parse_filter_criteria(request.args)
        if criteria.invalid_fields:
            app.logger.warning(
                "Ignoring malformed catalogue filters: %s",
                ", ".join(criteria.invalid_fields),
            )
        products = [
            serialize_product(document)
            for document in search_products(products_collection, criteria)
        ]
        return render_template(
            "catalogue.html",
            title="Catalogue",
            products=products,
            filters=request.args,
            criteria=criteria,
        )

    @app.route("/produit/<product_id>")
    @app.route("/product/<product_id>")
    def product_detail(product_id: str):
        try:
            product_document = fetch_product(product_id)
        except InputError:
            raise NotFoundError("Product not found.")
        product = serialize_product(product_document)
        return render_template("product_detail.html", title=product["title"], product=product)

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        return jsonify({"product": serialize_product(fetch_product(product_id))})

    @app.route("/signup", methods=["GET", "POST"])
    def signup():
        if request.method == "GET":
            return render_template("signup.html", title="Create an account")

        email, password = read_credentials()
        try:
            user_document = accounts.sign_up(email, password)
        except (InputError, AuthenticationError) as exc:
            return (
                render_template(
                    "signup.html", title="Create an account", error=exc.message, email=email
                ),
                exc.status_code,
            )
        return complete_sign_in(user_document, "Signed up")

    @app.route("/login", methods=["GET", "POST"])
    def login():
        if request.method == "GET":
            return render_template("login.html", title="Log in")

        email, password = read_credentials()
        try:
            user_document = accounts.sign_in_with_password(email, password)
        except (InputError, AuthenticationError) as exc:
            return (
                render_template("login.html", title="Log in", error=exc.message, email=email),
                exc.status_code,
            )
        return complete_sign_in(user_document, "Signed in")

    @app.route("/logout")
    def logout():
        return end_session(redirect(url_for("index")))

    @app.route("/upload", methods=["GET"])
    @admin_required
    def upload_form():
        return render_template("upload.html", title="Upload a product")

    @app.route("/api/products", methods=["POST"])
    @app.route("/upload", methods=["POST"])
    @admin_required
    def upload_product():
        principal = current_principal()
        submission = parse_submission(
            request.form, request.files, app.config["PRODUCT_ALLOWED_EXTENSIONS"]
        )
        product_document = ingest_product(
            products_collection,
            object_store,
            submission,
            principal.user_id,
            folder_prefix=app.config["UPLOAD_FOLDER_PREFIX"],
            cleanup_on_failure=app.config["UPLOAD_CLEANUP_ON_FAILURE"],
        )
        product = serialize_product(product_document)
        record_audit_log(
            principal.email,
            "Created product",
            {"product_id": product["id"], "product_title": product["title"]},
        )

        if wants_json():
            return (
                jsonify({"message": "Product uploaded successfully.", "product": product}),
                201,
            )
        return (
            render_template(
                "upload.html", title="Upload a product", created_product=product
            ),
            201,
        )

    @app.route("/product/delete/<product_id>", methods=["POST"])
    @admin_required
    def delete_product(product_id: str):
        product_document = fetch_product(product_id)
        delete_product_document(product_document, current_principal().email)
        return redirect(url_for("catalogue"))

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @admin_required
    def delete_product_api(product_id: str):
        product_document = fetch_product(product_id)
        delete_product_document(product_document, current_principal().email)
        return jsonify({"success": True, "message": "Product deleted successfully."})

    @app.route("/storage/<path:key>")
    def serve_stored_object(key: str):
        if not isinstance(object_store, LocalObjectStore):
            raise NotFoundError("Not found.")
        return send_from_directory(
            object_store.root, key, max_age=int(object_store.cache_control)
        )

    @app.route("/sitemap.xml")
    def sitemap():
        base_url = app.config["PUBLIC_BASE_URL"] or request.url_root
        entries = collect_sitemap_entries(products_collection, base_url)
        return Response(
            render_template("sitemap.xml", entries=entries), mimetype="application/xml"
        )

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app
