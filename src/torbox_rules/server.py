"""
HTTP API Server - Flask application for rule management

Provides REST API under /api/automation for:
- Rule CRUD (tenant-scoped by the caller's TorBox API key)
- Execution history, next-run time and manual runs
- Rule limit and health checks

Every response uses the envelope {"success": bool, "error": str|null, "data": ...}.
"""

import math
import logging
from functools import wraps
from typing import Any, Optional

from flask import Flask, g, jsonify, request

from torbox_rules.__version__ import __version__
from torbox_rules.encryption import hash_credential
from torbox_rules.errors import (
    DecryptionError,
    EncryptionKeyError,
    PersistenceError,
    RuleLimitError,
    RuleNotFoundError,
    RuleValidationError,
)
from torbox_rules.models import (
    MAX_INTERVAL_MINUTES,
    AutomationRule,
    CronTrigger,
    IntervalTrigger,
    RuleLimit,
    format_iso_timestamp,
)
from torbox_rules.scheduler import Scheduler, build_cron_trigger
from torbox_rules.store import RuleStore

logger = logging.getLogger(__name__)

API_PREFIX = '/api/automation'
MAX_RULE_NAME_LENGTH = 200
MAX_CONDITIONS = 20
MAX_CONDITION_VALUE = 1e9
DEFAULT_LOG_LIMIT = 100

# Global references (set by create_app)
store: RuleStore = None
scheduler: Scheduler = None
max_rules_per_user: int = 100


def create_app(rule_store: RuleStore, rule_scheduler: Scheduler, max_rules: int = 100) -> Flask:
    """
    Create and configure Flask application

    Args:
        rule_store: Rule store instance (encryption initialized)
        rule_scheduler: Scheduler instance
        max_rules: Maximum rules per API key

    Returns:
        Configured Flask app
    """
    global store, scheduler, max_rules_per_user

    store = rule_store
    scheduler = rule_scheduler
    max_rules_per_user = max_rules

    app = Flask(__name__)
    app.json.sort_keys = False

    # Disable Flask's default logger (use our configured logger instead)
    app.logger.disabled = True
    logging.getLogger('werkzeug').setLevel(logging.WARNING)

    register_routes(app)
    register_error_handlers(app)

    logger.info("Flask application created")
    return app


def api_response(data: Any = None, error: Optional[str] = None, status: int = 200):
    """Build a JSON envelope response"""
    return jsonify({
        'success': error is None,
        'error': error,
        'data': data,
    }), status


def extract_api_key() -> Optional[str]:
    """
    Caller's TorBox API key from:
    1. Header: Authorization: Bearer xxx
    2. Header: X-API-Key: xxx
    3. Query parameter: ?api_key=xxx
    """
    auth = request.headers.get('Authorization', '')
    if auth.lower().startswith('bearer '):
        token = auth[7:].strip()
        if token:
            return token

    return request.headers.get('X-API-Key') or request.args.get('api_key') or None


def require_api_key(f):
    """
    Decorator for tenant-scoped endpoints

    Sets g.api_key (raw key) and g.tenant_hash. Returns 401 if missing.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        api_key = extract_api_key()
        if not api_key:
            return api_response(error='Invalid or missing API key', status=401)

        g.api_key = api_key
        g.tenant_hash = hash_credential(api_key)
        return f(*args, **kwargs)

    return decorated_function


def validate_rule(rule: AutomationRule):
    """
    Check a rule before it is saved

    Raises:
        RuleValidationError: First problem found
    """
    name = rule.name.strip()
    if not name:
        raise RuleValidationError(rule.name, "Rule name cannot be empty")
    if len(rule.name) > MAX_RULE_NAME_LENGTH:
        raise RuleValidationError(rule.name[:40], f"Rule name cannot exceed {MAX_RULE_NAME_LENGTH} characters")

    if not rule.conditions:
        raise RuleValidationError(name, "At least one condition is required")
    if len(rule.conditions) > MAX_CONDITIONS:
        raise RuleValidationError(name, f"Cannot have more than {MAX_CONDITIONS} conditions")

    for condition in rule.conditions:
        if not math.isfinite(condition.value):
            raise RuleValidationError(name, "Condition value must be a finite number")
        if abs(condition.value) > MAX_CONDITION_VALUE:
            raise RuleValidationError(name, "Condition value is out of range")

    if isinstance(rule.trigger, CronTrigger):
        if not rule.trigger.expression.strip():
            raise RuleValidationError(name, "Cron expression cannot be empty")
        try:
            build_cron_trigger(rule.trigger.expression)
        except ValueError as e:
            raise RuleValidationError(name, f"Invalid cron expression: {e}")
    elif isinstance(rule.trigger, IntervalTrigger):
        if rule.trigger.minutes > MAX_INTERVAL_MINUTES:
            raise RuleValidationError(name, f"Interval cannot exceed {MAX_INTERVAL_MINUTES} minutes (1 year)")


def _get_owned_rule(rule_id: int) -> AutomationRule:
    rule = store.get_rule(rule_id, g.tenant_hash)
    if rule is None:
        raise RuleNotFoundError(rule_id)
    return rule


def register_routes(app: Flask):
    """Register all API routes"""

    @app.route(f'{API_PREFIX}/rules', methods=['GET'])
    @require_api_key
    def list_rules():
        """List the caller's rules, newest first"""
        rules = store.get_rules_by_api_key(g.tenant_hash)
        return api_response([rule.to_dict() for rule in rules])

    @app.route(f'{API_PREFIX}/rules', methods=['POST'])
    @require_api_key
    def create_rule():
        """
        Create a rule

        Body: name, enabled (optional), trigger_config, conditions, action_config

        Returns:
            201: Rule created
            400: Invalid rule
            403: Rule limit reached
        """
        rule = AutomationRule.from_request(request.get_json(silent=True), g.tenant_hash)
        validate_rule(rule)

        current_count = store.count_rules_by_api_key(g.tenant_hash)
        if current_count >= max_rules_per_user:
            raise RuleLimitError(current_count, max_rules_per_user)

        # The scheduler acts with the stored key
        store.save_credential(g.api_key)
        store.save_rule(rule)

        logger.info(f"Created rule {rule.id} '{rule.name}'")
        return api_response(rule.to_dict(), status=201)

    @app.route(f'{API_PREFIX}/rules/<int:rule_id>', methods=['GET'])
    @require_api_key
    def get_rule(rule_id: int):
        return api_response(_get_owned_rule(rule_id).to_dict())

    @app.route(f'{API_PREFIX}/rules/<int:rule_id>', methods=['PUT'])
    @require_api_key
    def update_rule(rule_id: int):
        """
        Replace a rule's definition

        Returns:
            200: Rule updated
            400: Invalid rule
            404: Rule not found for this API key
        """
        existing = _get_owned_rule(rule_id)

        rule = AutomationRule.from_request(request.get_json(silent=True), g.tenant_hash)
        rule.id = existing.id
        rule.created_at = existing.created_at
        validate_rule(rule)

        store.save_credential(g.api_key)
        store.save_rule(rule)

        logger.info(f"Updated rule {rule.id} '{rule.name}'")
        return api_response(rule.to_dict())

    @app.route(f'{API_PREFIX}/rules/<int:rule_id>', methods=['DELETE'])
    @require_api_key
    def delete_rule(rule_id: int):
        """Delete a rule and its execution history"""
        if not store.delete_rule(rule_id, g.tenant_hash):
            raise RuleNotFoundError(rule_id)

        logger.info(f"Deleted rule {rule_id}")
        return api_response({'deleted': rule_id})

    @app.route(f'{API_PREFIX}/rules/bulk-delete', methods=['POST'])
    @require_api_key
    def bulk_delete_rules():
        """
        Delete several rules

        Body: {"rule_ids": [1, 2, 3]}
        """
        body = request.get_json(silent=True)
        rule_ids = body.get('rule_ids') if isinstance(body, dict) else None
        if not isinstance(rule_ids, list) or not all(
            isinstance(rid, int) and not isinstance(rid, bool) for rid in rule_ids
        ):
            return api_response(error='rule_ids must be a list of integers', status=400)

        if not rule_ids:
            return api_response(error='No rule IDs provided', status=400)

        deleted_count = 0
        errors = []
        for rule_id in rule_ids:
            try:
                if store.delete_rule(rule_id, g.tenant_hash):
                    deleted_count += 1
                else:
                    errors.append(f"Rule {rule_id} not found or access denied")
            except PersistenceError as e:
                errors.append(f"Failed to delete rule {rule_id}: {e.message}")

        logger.info(f"Bulk delete completed: {deleted_count} deleted, {len(errors)} errors")

        data = {'deleted_count': deleted_count, 'total_requested': len(rule_ids)}
        if not errors:
            return api_response(data)

        data['errors'] = errors
        return jsonify({
            'success': deleted_count > 0,
            'error': f"Deleted {deleted_count} of {len(rule_ids)} rules. Errors: {'; '.join(errors)}",
            'data': data,
        }), 200

    @app.route(f'{API_PREFIX}/rules/<int:rule_id>/logs', methods=['GET'])
    @require_api_key
    def get_rule_logs(rule_id: int):
        """
        Recent execution logs for a rule

        Query Parameters:
            limit (optional): Max results (default: 100, max: 1000)
        """
        try:
            limit = int(request.args.get('limit', DEFAULT_LOG_LIMIT))
        except ValueError:
            return api_response(error='limit must be an integer', status=400)

        _get_owned_rule(rule_id)
        logs = store.get_execution_logs(rule_id, g.tenant_hash, limit)
        return api_response([log.to_dict() for log in logs])

    @app.route(f'{API_PREFIX}/rules/<int:rule_id>/next-run', methods=['GET'])
    @require_api_key
    def get_next_run(rule_id: int):
        """Next scheduled run (null for disabled rules)"""
        rule = _get_owned_rule(rule_id)
        if not rule.enabled:
            return api_response(None)

        return api_response(format_iso_timestamp(scheduler.get_next_run_time(rule.id, rule)))

    @app.route(f'{API_PREFIX}/rules/<int:rule_id>/run', methods=['POST'])
    @require_api_key
    def run_rule(rule_id: int):
        """
        Run a rule now, synchronously

        Returns:
            200: Execution log
            404: Rule not found for this API key
            409: Rule is already running
        """
        rule = _get_owned_rule(rule_id)

        log = scheduler.run_now(rule, credential=g.api_key)
        if log is None:
            return api_response(error=f"Rule {rule_id} is already running", status=409)

        return api_response(log.to_dict())

    @app.route(f'{API_PREFIX}/rules/limit', methods=['GET'])
    @require_api_key
    def get_rule_limit():
        limit = RuleLimit(store.count_rules_by_api_key(g.tenant_hash), max_rules_per_user)
        return api_response(limit.to_dict())

    @app.route(f'{API_PREFIX}/health', methods=['GET'])
    def health():
        """
        Health check endpoint (no authentication required)

        Returns:
            200: Service healthy
            503: Service unhealthy
        """
        database_ok = store.health_check()
        scheduler_ok = scheduler.is_alive()

        data = {
            'database': 'ok' if database_ok else 'error',
            'scheduler': 'running' if scheduler_ok else 'stopped',
            'version': __version__,
        }

        if database_ok and scheduler_ok:
            return api_response(data)

        return jsonify({'success': False, 'error': 'Service unhealthy', 'data': data}), 503


def register_error_handlers(app: Flask):
    """Map typed errors to envelope responses"""

    @app.errorhandler(RuleValidationError)
    def validation_error(error):
        return api_response(error=error.reason, status=400)

    @app.errorhandler(RuleLimitError)
    def limit_error(error):
        return api_response(error=error.message, status=403)

    @app.errorhandler(RuleNotFoundError)
    def rule_not_found(error):
        return api_response(error=error.message, status=404)

    @app.errorhandler(PersistenceError)
    def persistence_error(error):
        logger.error(f"Database error: {error}")
        return api_response(error='Database error', status=500)

    @app.errorhandler(DecryptionError)
    @app.errorhandler(EncryptionKeyError)
    def encryption_error(error):
        logger.error(f"Encryption error: {error}")
        return api_response(error='Encryption error', status=500)

    @app.errorhandler(404)
    def not_found(error):
        """Handle 404 errors"""
        return api_response(error='Endpoint not found', status=404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return api_response(error='Method not allowed', status=405)

    @app.errorhandler(500)
    def internal_error(error):
        """Handle 500 errors"""
        logger.error(f"Internal server error: {error}", exc_info=True)
        return api_response(error='An unexpected error occurred', status=500)


def run_server(
    app: Flask,
    host: str = '0.0.0.0',
    port: int = 5000,
    threads: int = 8,
    log_http_access: bool = False
):
    """
    Run Flask app with Gunicorn in production mode

    One gthread worker: the scheduler and the running-rule set live in that
    single process.

    Args:
        app: Flask application
        host: Bind address
        port: Bind port
        threads: Request handler threads
        log_http_access: Enable HTTP access logging (default: False to suppress health checks)
    """
    from gunicorn.app.base import BaseApplication
    from gunicorn.glogging import Logger

    health_path = f'{API_PREFIX}/health'

    class FilteredLogger(Logger):
        """Custom Gunicorn logger that filters out health check requests"""

        def access(self, resp, req, environ, request_time):
            if not log_http_access and environ.get('PATH_INFO') == health_path:
                return
            super().access(resp, req, environ, request_time)

    class StandaloneApplication(BaseApplication):
        def __init__(self, app, options=None):
            self.application = app
            self.options = options or {}
            super().__init__()

        def load_config(self):
            for key, value in self.options.items():
                if key in self.cfg.settings and value is not None:
                    self.cfg.set(key, value)

        def load(self):
            return self.application

    def post_fork(server, worker_process):
        """
        Gunicorn post-fork hook - reopen the database and restart the scheduler

        Threads don't survive the fork, so the driver thread and worker pool
        are rebuilt in the worker. The store gets a fresh SQLite connection.
        """
        logger.info(f"Gunicorn worker {worker_process.pid} forked - restarting scheduler")

        from torbox_rules.server import scheduler as scheduler_instance, store as store_instance

        store_instance.reset_after_fork()
        scheduler_instance.restart_after_fork()

    options = {
        'bind': f'{host}:{port}',
        'workers': 1,
        'worker_class': 'gthread',
        'threads': threads,
        'timeout': 180,
        'accesslog': '-',  # Log to stdout
        'errorlog': '-',   # Log to stderr
        'loglevel': 'warning',
        'logger_class': FilteredLogger,
        'preload_app': True,
        'post_fork': post_fork,
    }

    logger.info(f"Starting Gunicorn server on {host}:{port} with {threads} thread(s)")

    app_instance = StandaloneApplication(app, options)
    app_instance.run()
