#!/usr/bin/env python3
"""JSON API over the Companion Cube engine.

Reads (``/api/state``, ``/api/nudge``, ``/api/status``) come straight from
the scheduler cache and never wait for a running cycle. ``POST /api/cycle``
is the one blocking call: it returns once the forced cycle has a Summary.
"""

import logging
from datetime import datetime

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from companion.config import ConfigManager, get_config_manager
from companion.engine import CompanionEngine
from companion.errors import (
    CollectorEmpty,
    CollectorError,
    CollectorUnavailable,
    SummarizerUnavailable,
    ValidationError,
)
from companion.models import Mode, Timeframe

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Config keys that only take effect after a restart
RESTART_KEYS = {
    'activitywatch': ['host', 'max_retries', 'backoff_factor', 'bucket_cache_ttl_seconds'],
    'ollama': ['host', 'model'],
    'modes': ['ghost_interval_minutes', 'chill_interval_minutes', 'study_interval_minutes',
              'coach_interval_minutes', 'tick_seconds', 'daily_refresh_minutes'],
    'classification': ['high_threshold', 'mid_threshold', 'low_threshold', 'work_score_threshold',
                       'min_active_minutes', 'work_categories', 'communication_categories'],
    'web': ['host', 'port'],
    'storage': ['data_dir', 'auto_categorize'],
}


def init_app(engine: CompanionEngine) -> Flask:
    """Attach an engine to the app."""
    app.config['ENGINE'] = engine
    return app


def get_engine() -> CompanionEngine:
    """The attached engine, built from the default config on first use."""
    engine = app.config.get('ENGINE')
    if engine is None:
        engine = CompanionEngine(get_config_manager())
        app.config['ENGINE'] = engine
    return engine


def get_config() -> ConfigManager:
    return get_engine().config


@app.errorhandler(Exception)
def handle_error(e):
    """Return every failure as JSON instead of an HTML error page."""
    if isinstance(e, HTTPException):
        return jsonify({"error": e.description}), e.code
    logger.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
    return jsonify({"error": f"Internal error: {str(e)}"}), 500


@app.route('/api/state')
def current_state():
    """Latest summary for the current mode.

    Returns:
        {"mode": "...", "summary": {...} | null, "classification": {...} | null}
    """
    engine = get_engine()
    summary = engine.get_current_state()
    classification = engine.get_last_classification()
    return jsonify({
        "mode": engine.current_mode.value,
        "summary": summary.to_dict() if summary else None,
        "classification": classification.to_dict() if classification else None,
    })


@app.route('/api/state/daily')
def daily_state():
    """Latest daily summary, or the one kept for ``?date=YYYY-MM-DD``.

    Returns:
        {"summary": {...} | null, "dates": ["2026-10-18", ...]}
    """
    engine = get_engine()
    date_string = request.args.get('date')
    day = None
    if date_string:
        try:
            day = datetime.strptime(date_string, '%Y-%m-%d').date()
        except ValueError:
            return jsonify({"error": "Invalid date format. Use YYYY-MM-DD"}), 400
    summary = engine.get_daily_summary(day)
    return jsonify({
        "summary": summary.to_dict() if summary else None,
        "dates": [d.isoformat() for d in engine.daily_summary_dates()],
    })


@app.route('/api/history')
def activity_history():
    """Category statistics, hourly breakdown and top apps.

    Query parameters:
        range: hour, day or week (default: day)
    """
    try:
        data = get_engine().activity_history(request.args.get('range', 'day'))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except CollectorUnavailable as e:
        return jsonify({"error": f"Failed to get activity history: {str(e)}"}), 503
    return jsonify(data)


@app.route('/api/cycle', methods=['POST'])
def run_cycle():
    """Run a cycle now and return its summary.

    Request body (optional):
        {"mode": "study"}
    """
    data = request.get_json(silent=True) or {}
    try:
        summary = get_engine().request_cycle_now(data.get('mode'))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"summary": summary.to_dict()})


@app.route('/api/mode', methods=['GET'])
def get_mode():
    engine = get_engine()
    return jsonify({
        "mode": engine.current_mode.value,
        "modes": [m.value for m in Mode],
    })


@app.route('/api/mode', methods=['PUT'])
def set_mode():
    """Switch mode.

    Request body:
        {"mode": "ghost" | "chill" | "study" | "coach"}
    """
    data = request.get_json(silent=True) or {}
    if 'mode' not in data:
        return jsonify({"error": "Missing required field: mode"}), 400
    try:
        mode = get_engine().set_mode(data['mode'])
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"mode": mode.value})


@app.route('/api/categories', methods=['GET'])
def list_categories():
    categories = get_engine().list_categories()
    return jsonify({"categories": [c.to_dict() for c in categories]})


@app.route('/api/categories/<app_name>', methods=['PUT'])
def update_category(app_name):
    """Create or change one category.

    Request body:
        {"category": "development", "subcategory": "ide", "productivity_score": 90}
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400
    try:
        category = get_engine().update_category(app_name, data)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"category": category.to_dict()})


@app.route('/api/categories/bulk', methods=['POST'])
def bulk_update_categories():
    """Apply several category updates, all or nothing.

    Request body:
        {"categories": [{"app_name": "...", "category": "...", ...}, ...]}
    """
    data = request.get_json(silent=True) or {}
    records = data.get('categories') if isinstance(data, dict) else None
    if not isinstance(records, list):
        return jsonify({"error": "Missing required field: categories (list)"}), 400
    try:
        categories = get_engine().bulk_update_categories(records)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"categories": [c.to_dict() for c in categories]})


@app.route('/api/categories/auto', methods=['POST'])
def auto_categorize():
    """Ask the model to categorize apps.

    Request body (optional):
        {"apps": ["blender", "krita"]}

    Without ``apps``, the uncategorized apps of the last hour are used.
    """
    data = request.get_json(silent=True) or {}
    engine = get_engine()
    apps = data.get('apps')
    if apps is None:
        try:
            events = engine.collector.collect(Timeframe.HOURLY)
        except CollectorEmpty:
            events = []
        except CollectorError as e:
            return jsonify({"error": f"Failed to collect recent apps: {e}"}), 503
        apps = [e.app_name for e in events]
    elif not isinstance(apps, list):
        return jsonify({"error": "apps must be a list"}), 400

    try:
        categories = engine.categorize_unknown_apps(apps)
    except SummarizerUnavailable as e:
        return jsonify({"error": str(e)}), 503
    except ValidationError as e:
        return jsonify({"error": f"Model proposed an invalid category: {e}"}), 502
    return jsonify({"categories": [c.to_dict() for c in categories]})


@app.route('/api/nudge')
def last_nudge():
    nudge = get_engine().get_last_nudge()
    return jsonify({"nudge": nudge.to_dict() if nudge else None})


@app.route('/api/status')
def status():
    """Scheduler state, cached results and service reachability."""
    engine = get_engine()
    data = engine.status()
    if request.args.get('check') == '1':
        data["connections"] = engine.check_connections()
    return jsonify(data)


@app.route('/api/ollama/models')
def ollama_models():
    engine = get_engine()
    try:
        models = engine.list_models()
    except SummarizerUnavailable as e:
        return jsonify({"error": str(e), "models": []}), 503
    return jsonify({"models": models, "current": engine.summarizer.model})


@app.route('/api/config', methods=['GET'])
def get_config_values():
    """Return current configuration.

    Returns:
        JSON object with all configuration sections
    """
    return jsonify(get_config().to_dict())


@app.route('/api/config', methods=['PATCH'])
def update_config():
    """Update configuration values.

    Request body:
        {
            "section": "user",
            "key": "study_focus",
            "value": "linear algebra"
        }

    Returns:
        {
            "success": true/false,
            "requires_restart": true/false,
            "config": {...}
        }
    """
    data = request.get_json(silent=True) or {}

    if not all(k in data for k in ['section', 'key', 'value']):
        return jsonify({"error": "Missing required fields: section, key, value"}), 400

    section = data['section']
    key = data['key']
    value = data['value']

    config_manager = get_config()
    try:
        changed = config_manager.update(section, key, value)
    except OSError as e:
        return jsonify({"error": f"Failed to update config: {str(e)}"}), 500

    requires_restart = section in RESTART_KEYS and key in RESTART_KEYS[section]

    return jsonify({
        "success": changed,
        "requires_restart": requires_restart,
        "config": config_manager.to_dict()
    })


if __name__ == '__main__':
    app.run(debug=True, host='127.0.0.1', port=55556)
