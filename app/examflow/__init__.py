import logging

from flask import Flask, g, jsonify, request
from dotenv import load_dotenv

from app.examflow.config import load_config
from app.examflow.db import init_db, teardown_db_session
from app.examflow.errors import WorkflowError
from app.examflow.routes import bp as routes_bp
from app.examflow.auth import load_current_user
from app.examflow.admin import bp as admin_bp
from app.examflow.modules.review_workflow.admin import bp as review_workflow_bp
from app.examflow.modules.notifications.admin import bp as notifications_bp
from app.examflow.modules.notifications.dispatcher import dispatcher_from_config


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.extensions["notification_dispatcher"] = dispatcher_from_config(
        app.config, app.extensions["sqlalchemy_sessionmaker"]
    )

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = []
        for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
            if not app.config.get(key):
                missing_s3.append(key)
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(admin_bp, url_prefix="/api/admin")
    app.register_blueprint(review_workflow_bp, url_prefix="/api")
    app.register_blueprint(notifications_bp, url_prefix="/api")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(WorkflowError)
    def _workflow_error(e: WorkflowError):  # type: ignore[no-redef]
        app.logger.info(
            "Request rejected: %s (%s) path=%s request_id=%s",
            e.code,
            e.message,
            request.path,
            getattr(g, "request_id", None),
        )
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "not_found", "message": "Resource not found."}), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"error": "too_large", "message": "File too large. Maximum size is 25MB."}), 413

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "internal_error", "message": "Unexpected server error."}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
