"""
Health check HTTP server for Kubernetes liveness and readiness probes.

Provides endpoints for monitoring the health and readiness of the engine.
"""

import sqlite3
from pathlib import Path
from typing import Any

from flask import Flask, jsonify

from trackify_engine import __version__
from trackify_engine.kernel.logging import get_logger

logger = get_logger(__name__)

app = Flask(__name__)

SERVICE_NAME = "trackify-engine"

# Global state - will be set by initialize_health_server()
_db_path: Path | None = None
_engine: Any = None  # TrackifyEngine instance for workflow counts


def initialize_health_server(db_path: str | Path, engine: Any = None) -> None:
    """
    Initialize the health server with engine instance and database path.

    Args:
        db_path: Path to SQLite database
        engine: Optional TrackifyEngine instance for workflow and budget counts
    """
    global _db_path, _engine
    _db_path = Path(db_path)
    _engine = engine
    logger.info("Health server initialized", db_path=str(_db_path))


@app.route("/health/live", methods=["GET"])
def liveness() -> tuple[dict[str, Any], int]:
    """
    Liveness probe - checks if the process is running.

    Returns:
        JSON response with status and 200 OK
    """
    return jsonify({"status": "alive", "service": SERVICE_NAME}), 200


@app.route("/health/ready", methods=["GET"])
def readiness() -> tuple[dict[str, Any], int]:
    """
    Readiness probe - checks if the service is ready to accept requests.

    Checks:
    - Database file exists
    - The events table can be queried

    Returns:
        JSON response with status and 200 OK if ready, 503 if not ready
    """
    if _db_path is None:
        logger.error("Readiness check failed: DB path not initialized")
        return jsonify({"status": "not_ready", "reason": "database_path_not_initialized"}), 503

    if not _db_path.exists():
        logger.error("Readiness check failed: DB file does not exist", db_path=str(_db_path))
        return (
            jsonify(
                {
                    "status": "not_ready",
                    "reason": "database_file_not_found",
                    "db_path": str(_db_path),
                }
            ),
            503,
        )

    try:
        conn = sqlite3.connect(str(_db_path), timeout=1.0)
        try:
            event_count = conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]
        finally:
            conn.close()
    except sqlite3.Error as e:
        logger.error("Readiness check failed: DB operational error", error=str(e))
        return (
            jsonify(
                {
                    "status": "not_ready",
                    "reason": "database_operational_error",
                    "error": str(e),
                }
            ),
            503,
        )

    logger.debug("Readiness check passed", event_count=event_count)
    return (
        jsonify({"status": "ready", "database": "accessible", "event_count": event_count}),
        200,
    )


def _database_health(db_path: Path) -> dict[str, Any]:
    conn = sqlite3.connect(str(db_path), timeout=1.0)
    try:
        event_count = conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]
        stream_count = conn.execute("SELECT COUNT(DISTINCT stream_id) FROM events").fetchone()[0]
        page_count = conn.execute("PRAGMA page_count").fetchone()[0]
        page_size = conn.execute("PRAGMA page_size").fetchone()[0]
    finally:
        conn.close()
    return {
        "status": "healthy",
        "path": str(db_path),
        "event_count": event_count,
        "stream_count": stream_count,
        "size_mb": round((page_count * page_size) / (1024 * 1024), 2),
    }


@app.route("/health", methods=["GET"])
def detailed_health() -> tuple[dict[str, Any], int]:
    """
    Detailed health check - includes workflow and budget counts if available.

    Overdue workflows are reported but do not make the service unhealthy;
    the escalation sweep handles them.
    """
    health_data: dict[str, Any] = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": __version__,
    }

    if _db_path and _db_path.exists():
        try:
            health_data["database"] = _database_health(_db_path)
        except sqlite3.Error as e:
            logger.error("Database health check failed", error=str(e))
            health_data["database"] = {"status": "unhealthy", "error": str(e)}
            health_data["status"] = "degraded"
    else:
        health_data["database"] = {"status": "not_initialized"}
        health_data["status"] = "degraded"

    if _engine is not None:
        stats = _engine.health()
        health_data["workflows"] = {
            "total": stats["workflows"],
            "pending": stats["pending_workflows"],
            "overdue": stats["overdue_workflows"],
            "by_status": stats["workflows_by_status"],
        }
        health_data["budgets"] = {
            "total": stats["budgets"],
            "active": stats["active_budgets"],
        }

    status_code = 200 if health_data["status"] == "healthy" else 503
    return jsonify(health_data), status_code


def run_health_server(port: int = 8080, debug: bool = False) -> None:
    """
    Run the health check server.

    Args:
        port: Port to listen on (default: 8080)
        debug: Enable Flask debug mode (default: False)
    """
    logger.info("Starting health check server", port=port)
    app.run(host="0.0.0.0", port=port, debug=debug)
