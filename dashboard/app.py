"""
This module contains the backend Flask application for the admin dashboard.
"""

import logging

from flask import Flask, Response, abort, current_app, jsonify, render_template, request

from pickup_ledger.config import DASHBOARD_HOST, DASHBOARD_PORT
from pickup_ledger.exceptions import InvalidInput, NotFound
from pickup_ledger.services.analytics_service import DEFAULT_TIMEFRAME, TIMEFRAMES

logger = logging.getLogger(__name__)

app = Flask(__name__)


def _facade():
    return current_app.config["FACADE"]


@app.route("/")
def index():
    """Renders the main dashboard page with KPIs, rankings and logs."""
    timeframe = request.args.get("timeframe", DEFAULT_TIMEFRAME)
    data = _facade().get_dashboard_data(timeframe)
    stats = data.get("stats") or {}
    return render_template(
        "index.html",
        overview=stats.get("overview"),
        breakdown=stats.get("breakdown", {}),
        timeframe=stats.get("timeframe", timeframe),
        timeframes=list(TIMEFRAMES),
        logs=data.get("logs", []),
        error=data.get("error"),
    )


@app.route("/api/platform-stats")
def platform_stats():
    """Returns the platform statistics as JSON."""
    timeframe = request.args.get("timeframe", DEFAULT_TIMEFRAME)
    data = _facade().get_dashboard_data(timeframe)
    if data.get("error"):
        return jsonify({"error": data["error"]}), 500
    return jsonify(data["stats"])


@app.route("/collectors/<int:collector_id>/schedule.ics")
def collector_schedule(collector_id: int):
    """Serves a collector's upcoming pickups as a calendar subscription."""
    try:
        ics = _facade().export_collector_schedule(collector_id)
    except (NotFound, InvalidInput):
        abort(404)
    return Response(
        ics,
        mimetype="text/calendar",
        headers={
            "Content-Disposition": f"inline; filename=collector-{collector_id}.ics"
        },
    )


def run_dashboard(facade, host: str = DASHBOARD_HOST, port: int = DASHBOARD_PORT):
    """Serves the dashboard backed by the given facade."""
    app.config["FACADE"] = facade
    logger.info(f"Dashboard listening on {host}:{port}")
    # Running on 0.0.0.0 makes it accessible from outside the container
    app.run(host=host, port=port)
