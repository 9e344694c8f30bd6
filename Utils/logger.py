import os
import logging
from logging.handlers import TimedRotatingFileHandler, SMTPHandler
import gzip
import glob
import time
import re
from datetime import datetime
from collections import defaultdict
import click
from flask.cli import with_appcontext
from flask.logging import default_handler

LOG_DIR = "logs"


def _rotating_handler(filename, backup_count, formatter, level=logging.INFO):
    handler = TimedRotatingFileHandler(
        os.path.join(LOG_DIR, filename), when="midnight", interval=1, backupCount=backup_count,
        encoding="utf-8", delay=True
    )
    handler.suffix = "%Y-%m-%d"
    handler.setFormatter(formatter)
    handler.setLevel(level)
    return handler


def _console_handler(formatter):
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.setLevel(logging.INFO)
    return handler


# ==================================================
# LOGGING SETUP
# ==================================================
def setup_logging(app):
    """Configure logging for the Flask app.

    Testing apps get console output only; no log files are created.
    """
    # Prevent duplicate log handlers when Flask auto-reloads
    if getattr(app, "_logging_configured", False):
        return app.logger
    app._logging_configured = True

    write_files = not app.testing
    if write_files:
        os.makedirs(LOG_DIR, exist_ok=True)

    # -------------------------
    # FORMATTERS
    # -------------------------
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] in %(module)s: %(message)s")
    access_formatter = logging.Formatter("%(asctime)s - %(message)s")

    # -------------------------
    # REGISTER LOGGERS
    # -------------------------
    # Service modules log under their own names; the root logger carries the
    # shared file sinks and Flask's app logger propagates into it.
    app_logger = app.logger
    app_logger.setLevel(logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)

    access_logger = logging.getLogger("access")
    access_logger.setLevel(logging.INFO)

    audit_logger = logging.getLogger("audit")
    audit_logger.setLevel(logging.INFO)

    # Under test the records propagate to the root logger, where pytest's
    # log capture picks them up.
    if write_files:
        for handler in (
            _rotating_handler("app.log", 14, formatter),
            _rotating_handler("error.log", 30, formatter, logging.ERROR),
            _console_handler(formatter),
        ):
            root_logger.addHandler(handler)
        app_logger.removeHandler(default_handler)
        access_logger.addHandler(_rotating_handler("access.log", 7, access_formatter))
        # Claim decisions are kept longer than request logs
        audit_logger.addHandler(_rotating_handler("audit.log", 90, formatter))

        # Console mirrors so the platform log drain captures everything
        access_logger.addHandler(_console_handler(access_formatter))
        audit_logger.addHandler(_console_handler(formatter))
        access_logger.propagate = False
        audit_logger.propagate = False

    # -------------------------
    # EMAIL ALERTS (OPT-IN)
    # -------------------------
    enable_smtp = os.getenv("ENABLE_SMTP_ALERTS", "false").lower() in ("1", "true", "yes")
    if enable_smtp and not app.debug and not app.testing:
        try:
            mail_handler = SMTPHandler(
                mailhost=(os.getenv("SMTP_HOST", "smtp.gmail.com"), int(os.getenv("SMTP_PORT", "587"))),
                fromaddr=os.getenv("EMAIL_SENDER", "noreply@pataid.app"),
                toaddrs=[addr.strip() for addr in os.getenv("SMTP_TO", "admin@pataid.app").split(",") if addr.strip()],
                subject=os.getenv("SMTP_SUBJECT", "🚨 PataID Critical Error"),
                credentials=(os.getenv("SMTP_USER", ""), os.getenv("SMTP_PASS", "")),
                secure=()
            )
            mail_handler.setLevel(logging.ERROR)
            mail_handler.setFormatter(formatter)
            app_logger.addHandler(mail_handler)
        except Exception as e:
            app_logger.warning(f"SMTP alerts disabled due to configuration error: {e}")

    # -------------------------
    # LOG HOOKS & TASKS
    # -------------------------
    register_access_log_hook(app, access_logger)
    if write_files:
        register_cleanup_task(app)
    register_log_summary_command(app)

    app_logger.info("🚀 Logging initialized successfully.")
    return app_logger


# ==================================================
# ACCESS LOGGING
# ==================================================
def register_access_log_hook(app, access_logger):
    """Logs each response (IP, method, URL, status) into access.log."""
    from flask import request

    @app.after_request
    def log_request_info(response):
        try:
            access_logger.info(f"{request.remote_addr} {request.method} {request.url} {response.status_code}")
        except Exception as e:
            app.logger.warning(f"⚠️ Failed to log request: {e}")
        return response


# ==================================================
# ARCHIVING
# ==================================================
# Days a compressed archive is kept; None keeps it forever
ARCHIVE_RETENTION_DAYS = {
    "app.log": 14,
    "error.log": 30,
    "access.log": 7,
    "audit.log": None,
}


def archive_rotated_logs(log_dir=LOG_DIR, now=None):
    """Gzip rotated files and prune archives past their retention.

    Returns ``(compressed, deleted)`` file name lists.
    """
    now = now or time.time()
    compressed, deleted = [], []

    for rotated in glob.glob(os.path.join(log_dir, "*.log.*")):
        if rotated.endswith(".gz"):
            continue
        with open(rotated, "rb") as src, gzip.open(f"{rotated}.gz", "wb") as dst:
            dst.writelines(src)
        os.remove(rotated)
        compressed.append(os.path.basename(rotated))

    for archive in glob.glob(os.path.join(log_dir, "*.gz")):
        name = os.path.basename(archive).split(".log", 1)[0] + ".log"
        keep_days = ARCHIVE_RETENTION_DAYS.get(name, 7)
        if keep_days is not None and os.stat(archive).st_mtime < now - keep_days * 86400:
            os.remove(archive)
            deleted.append(os.path.basename(archive))

    return compressed, deleted


def register_cleanup_task(app):
    try:
        compressed, deleted = archive_rotated_logs()
    except OSError as e:
        app.logger.error(f"❌ Log archiving failed: {e}")
        return
    if compressed or deleted:
        app.logger.info(f"🗜️ Archived {len(compressed)} rotated logs, pruned {len(deleted)} old archives")


# ==================================================
# LOG SUMMARY
# ==================================================
LEVELS = ("INFO", "WARNING", "ERROR")
LINE_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2}).*\[(INFO|ERROR|WARNING)\]")


def summarize_log_dir(log_dir=LOG_DIR, days=7, now=None):
    """Count INFO/WARNING/ERROR lines per day across app and error logs."""
    now = now or datetime.now()
    if not os.path.isdir(log_dir):
        return {}

    summary = defaultdict(lambda: dict.fromkeys(LEVELS, 0))
    for filename in sorted(os.listdir(log_dir)):
        if not filename.startswith(("app.log", "error.log")):
            continue
        path = os.path.join(log_dir, filename)
        if (now - datetime.fromtimestamp(os.path.getmtime(path))).days > days:
            continue

        opener = gzip.open if filename.endswith(".gz") else open
        try:
            with opener(path, "rt", encoding="utf-8", errors="ignore") as f:
                for line in f:
                    match = LINE_PATTERN.match(line)
                    if match:
                        day, level = match.groups()
                        summary[day][level] += 1
        except OSError as e:
            logging.getLogger(__name__).warning(f"⚠️ Could not read {filename}: {e}")

    return dict(summary)


def summary_totals(summary) -> dict:
    totals = dict.fromkeys(LEVELS, 0)
    for counts in summary.values():
        for level in LEVELS:
            totals[level] += counts[level]
    return totals


def register_log_summary_command(app):
    """Adds 'flask logs:summary' CLI command to view log stats."""

    @click.command("logs:summary")
    @with_appcontext
    @click.option("--days", default=7, help="Days of logs to summarize")
    def summarize_logs(days):
        summary = summarize_log_dir(days=days)
        if not summary:
            click.echo("No log entries found in the specified time range.")
            return

        click.echo("📊 Log summary")
        for day in sorted(summary):
            click.echo(f"{day}  " + "  ".join(f"{level}: {summary[day][level]:<5}" for level in LEVELS))
        totals = summary_totals(summary)
        click.echo("Total  " + "  ".join(f"{level}: {totals[level]}" for level in LEVELS))

    app.cli.add_command(summarize_logs)
