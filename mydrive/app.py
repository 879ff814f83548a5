import shutil
import time
import uuid
from typing import Any, Dict, List, Optional

import click
from flask import (
    Blueprint,
    Flask,
    Response,
    current_app,
    g,
    jsonify,
    render_template,
    request,
    send_file,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import NotFound, RequestEntityTooLarge, TooManyRequests

from .auth import EXTENSION_KEY as GATE_KEY
from .auth import AccessGate, require_token
from .blobs import BlobStore
from .config import Settings, load_settings
from .errors import ValidationError, VaultError
from .logs import configure_logging, lifecycle_logger, sanitize_log_value, security_logger
from .maintenance import start_scheduler
from .manager import StorageManager
from .storage import MetadataIndex

MANAGER_KEY = "mydrive.manager"
SETTINGS_KEY = "mydrive.settings"
SCHEDULER_KEY = "mydrive.scheduler"
UPLOAD_FIELDS = ("files", "file")

limiter = Limiter(key_func=get_remote_address)

api = Blueprint("api", __name__, url_prefix="/api")
site = Blueprint("site", __name__)


def get_manager() -> StorageManager:
    return current_app.extensions[MANAGER_KEY]


def upload_rate_limit_string() -> str:
    return f"{current_app.config['UPLOAD_RATE_LIMIT_PER_HOUR']} per hour"


def download_rate_limit_string() -> str:
    return f"{current_app.config['DOWNLOAD_RATE_LIMIT_PER_MINUTE']} per minute"


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


def _collect_uploads() -> List[FileStorage]:
    uploads: List[FileStorage] = []
    for field_name in UPLOAD_FIELDS:
        for upload in request.files.getlist(field_name):
            if not isinstance(upload, FileStorage) or not upload.filename:
                continue
            uploads.append(upload)
    return uploads


@api.route("/upload", methods=["POST"])
@require_token
@limiter.limit(upload_rate_limit_string)
def upload_files():
    uploads = _collect_uploads()
    if not uploads:
        lifecycle_logger.warning("upload_failed reason=no_file_selected")
        raise ValidationError()

    try:
        outcomes = get_manager().admit_many(
            (upload.stream, upload.filename, upload.mimetype or None)
            for upload in uploads
        )
    finally:
        for upload in uploads:
            _close_stream_safely(
                upload.stream,
                f"upload filename={sanitize_log_value(upload.filename)}",
            )

    results = [outcome.to_dict() for outcome in outcomes]
    succeeded = sum(1 for outcome in outcomes if outcome.ok)
    for outcome in outcomes:
        if outcome.ok:
            lifecycle_logger.info(
                "file_uploaded file_id=%s filename=%s size=%d",
                outcome.record.id,
                sanitize_log_value(outcome.record.original_name),
                outcome.record.size_bytes,
            )

    if succeeded == len(outcomes):
        status = 201
    elif succeeded:
        # Partial success: some uploads succeeded, some failed
        status = 207
    else:
        status = outcomes[0].error.status_code if outcomes[0].error else 500

    payload: Dict[str, object] = {
        "success": succeeded == len(outcomes),
        "uploaded": succeeded,
        "failed": len(outcomes) - succeeded,
        "files": results,
    }
    return jsonify(payload), status


@api.route("/files", methods=["GET"])
@require_token
def list_files():
    return jsonify([record.to_dict() for record in get_manager().list_files()])


@api.route("/download/<file_id>", methods=["GET"])
@require_token
@limiter.limit(download_rate_limit_string)
def download(file_id: str):
    result = get_manager().fetch(file_id)
    lifecycle_logger.info("file_downloaded file_id=%s size=%d", file_id, result.size)
    try:
        response = send_file(
            result.stream,
            mimetype=result.record.mime_type,
            as_attachment=True,
            download_name=result.record.original_name,
            conditional=False,
            etag=False,
        )
    except Exception:
        _close_stream_safely(result.stream, f"download file_id={file_id}")
        raise
    response.content_length = result.size
    return response


@api.route("/files/<file_id>", methods=["DELETE"])
@require_token
def delete_file(file_id: str):
    record = get_manager().remove(file_id)
    lifecycle_logger.info(
        "file_deleted file_id=%s filename=%s",
        record.id,
        sanitize_log_value(record.original_name),
    )
    return jsonify({"success": True, "id": record.id})


@api.route("/stats", methods=["GET"])
@require_token
def stats():
    return jsonify(get_manager().stats().to_dict())


@site.route("/")
def index():
    return render_template("index.html")


@site.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True
    manager = get_manager()

    try:
        manager.stats()
        checks["database"] = "ok"
    except VaultError as error:
        checks["database"] = f"error: {error.message[:100]}"
        healthy = False

    uploads_dir = manager.blob_store.root
    try:
        usage = shutil.disk_usage(uploads_dir)
        checks["disk_space_gb"] = round(usage.free / (1024 ** 3), 2)
    except OSError as error:
        checks["disk_space_gb"] = 0
        checks["disk_space_status"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        probe_file = uploads_dir / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    scheduler = current_app.extensions.get(SCHEDULER_KEY)
    checks["scheduler_running"] = bool(scheduler is not None and scheduler.running)

    status = "healthy" if healthy else "unhealthy"
    code = 200 if healthy else 503
    return jsonify({"status": status, "timestamp": time.time(), "checks": checks}), code


@site.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@site.after_app_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@site.after_app_request
def add_security_headers(response: Response):
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@site.app_errorhandler(VaultError)
def handle_vault_error(error: VaultError):
    if error.status_code >= 500:
        lifecycle_logger.error(
            "request_failed kind=%s error=%s", error.kind, sanitize_log_value(error.message)
        )
    return jsonify(error.to_payload()), error.status_code


@site.app_errorhandler(RequestEntityTooLarge)
def handle_file_too_large(error):
    return jsonify({"error": "File too large", "kind": "too_large"}), 413


@site.app_errorhandler(TooManyRequests)
def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@site.app_errorhandler(NotFound)
def not_found(error):
    return jsonify({"error": "Not found", "kind": "not_found"}), 404


def register_cli(app: Flask) -> None:
    @app.cli.command("reconcile")
    @click.option("--dry-run", is_flag=True, help="Report orphans without deleting them.")
    @click.option(
        "--grace-seconds",
        type=int,
        default=None,
        help="Only treat blobs older than this as orphans.",
    )
    def reconcile_command(dry_run: bool, grace_seconds: Optional[int]) -> None:
        """Compare the blob directory against the metadata index."""

        settings: Settings = app.extensions[SETTINGS_KEY]
        grace = settings.orphan_grace_seconds if grace_seconds is None else grace_seconds
        report = app.extensions[MANAGER_KEY].reconcile(grace_seconds=grace, dry_run=dry_run)
        click.echo(f"orphan blobs found: {len(report.orphan_blobs_found)}")
        click.echo(f"orphan blobs removed: {len(report.orphan_blobs_removed)}")
        click.echo(f"records missing on disk: {len(report.missing_blobs)}")
        for file_id in report.missing_blobs:
            click.echo(f"  missing: {file_id}")

    @app.cli.command("stats")
    def stats_command() -> None:
        """Print the stored file count and total size."""

        totals = app.extensions[MANAGER_KEY].stats()
        click.echo(f"files: {totals.count}")
        click.echo(f"total bytes: {totals.total_size_bytes}")


def create_app(settings: Optional[Settings] = None) -> Flask:
    settings = settings or load_settings()
    configure_logging(settings)
    settings.ensure_directories()

    index_store = MetadataIndex(settings.db_path)
    index_store.init_schema()
    blob_store = BlobStore(settings.uploads_dir, chunk_size=settings.chunk_size)
    blob_store.ensure_root()
    manager = StorageManager(blob_store, index_store)

    app = Flask(__name__)
    app.config.update(
        MAX_CONTENT_LENGTH=settings.max_content_length,
        RATELIMIT_ENABLED=settings.rate_limit_enabled,
        RATELIMIT_STORAGE_URI="memory://",
        UPLOAD_RATE_LIMIT_PER_HOUR=settings.upload_rate_limit_per_hour,
        DOWNLOAD_RATE_LIMIT_PER_MINUTE=settings.download_rate_limit_per_minute,
    )
    app.extensions[SETTINGS_KEY] = settings
    app.extensions[MANAGER_KEY] = manager
    app.extensions[GATE_KEY] = AccessGate(settings.secret_token)

    limiter.init_app(app)
    app.register_blueprint(site)
    app.register_blueprint(api)
    register_cli(app)

    if settings.uses_default_token:
        security_logger.warning(
            "SECURITY WARNING: SECRET_TOKEN is not set; the default token is in use. "
            "Set SECRET_TOKEN before exposing the server."
        )

    if settings.scheduler_enabled:
        app.extensions[SCHEDULER_KEY] = start_scheduler(manager, settings)

    lifecycle_logger.info(
        "app_created uploads_dir=%s db_path=%s max_upload_mb=%d",
        settings.uploads_dir,
        settings.db_path,
        settings.max_upload_size_mb,
    )
    return app


if __name__ == "__main__":
    _settings = load_settings()
    _app = create_app(_settings)
    lifecycle_logger.info("mydrive_running url=http://localhost:%d", _settings.port)
    _app.run(host=_settings.host, port=_settings.port, debug=False)
