#!/usr/bin/env python3
"""
torbox-rules CLI

Supports two modes:
1. Server mode (--serve): Runs HTTP API server with the rule scheduler
2. Client mode: Talks to a running server over its HTTP API

Client commands: --list-rules, --run, --logs, --rule-limit
"""

import sys

import requests

from torbox_rules.arguments import create_parser, process_args, handle_utility_args
from torbox_rules.config import load_config, parse_bool
from torbox_rules.errors import handle_errors
from torbox_rules.logging import setup_logging, get_logger

logger = None  # Set after logging is configured

API_PREFIX = '/api/automation'


def get_server_config(args, config_obj) -> dict:
    """
    Get server configuration from CLI args, env vars, or config file

    Returns:
        Dictionary with server configuration
    """
    return {
        'host': config_obj.resolve('server.host', getattr(args, 'server_host', None)),
        'port': config_obj.resolve_int('server.port', getattr(args, 'server_port', None)),
        'threads': config_obj.resolve_int('server.threads', getattr(args, 'server_threads', None)),
    }


def get_client_config(args, config_obj) -> dict:
    """
    Get client configuration from CLI args, env vars, or config file

    Returns:
        Dictionary with client configuration
    """
    return {
        'server_url': str(config_obj.resolve('client.server_url', getattr(args, 'client_server_url', None))),
        'api_key': config_obj.resolve('client.api_key', getattr(args, 'client_api_key', None)),
    }


def run_server_mode(args, config_obj):
    """
    Run server mode - Start HTTP API server with scheduler

    The scheduler thread is started by the Gunicorn post-fork hook, inside
    the worker process.

    Args:
        args: Parsed CLI arguments
        config_obj: Loaded configuration object
    """
    logger.info("=" * 60)
    logger.info("Starting torbox-rules server")
    logger.info("=" * 60)

    server_config = get_server_config(args, config_obj)
    automation = config_obj.get_automation_config()
    torbox = config_obj.get_torbox_config()

    from torbox_rules.store import RuleStore
    store = RuleStore(config_obj.get_database_path())
    store.initialize_encryption()
    logger.info(f"Database: {store.db_path}")

    from torbox_rules.scheduler import Scheduler
    scheduler = Scheduler(
        store=store,
        tick_interval=automation['tick_interval'],
        max_concurrent_runs=automation['max_concurrent_runs'],
        execution_timeout=automation['execution_timeout'],
        log_retention_days=automation['log_retention_days'],
        api_base=torbox['api_base'],
        api_timeout=torbox['timeout'],
    )
    logger.info(f"TorBox API: {torbox['api_base']}")

    from torbox_rules.server import create_app, run_server
    app = create_app(
        rule_store=store,
        rule_scheduler=scheduler,
        max_rules=automation['max_rules_per_user']
    )

    logger.info(f"Starting server on {server_config['host']}:{server_config['port']}")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 60)

    log_http_access = parse_bool(config_obj.get('logging.http_access', False))

    try:
        run_server(
            app=app,
            host=server_config['host'],
            port=server_config['port'],
            threads=server_config['threads'],
            log_http_access=log_http_access
        )
    except KeyboardInterrupt:
        logger.info("\nShutting down...")
    finally:
        scheduler.stop()
        store.close()
        logger.info("Server stopped")


def _client_session(args, config_obj):
    """Server URL and headers for client commands; exits if no API key is set"""
    client_config = get_client_config(args, config_obj)

    if not client_config['api_key']:
        logger.error("Client API key is required. Set via:")
        logger.error("  - CLI: --client-api-key <key>")
        logger.error("  - Env: TORBOX_RULES_CLIENT_API_KEY or TORBOX_RULES_CLIENT_API_KEY_FILE")
        logger.error("  - Config: client.api_key in config.yml")
        sys.exit(1)

    server_url = client_config['server_url'].rstrip('/')
    headers = {'Authorization': f"Bearer {client_config['api_key']}"}
    return server_url, headers


def _call_server(method: str, server_url: str, path: str, headers: dict, **kwargs):
    """
    Call the server and unwrap the response envelope

    Exits on connection failures, authentication failures and unexpected
    responses. Returns (status_code, envelope) otherwise.
    """
    try:
        response = requests.request(
            method,
            f"{server_url}{API_PREFIX}{path}",
            headers=headers,
            timeout=kwargs.pop('timeout', 10),
            **kwargs
        )
    except requests.exceptions.ConnectionError:
        logger.error(f"Cannot connect to server at {server_url}")
        logger.error("Is the server running? Start with: torbox-rules --serve")
        sys.exit(1)
    except requests.exceptions.Timeout:
        logger.error(f"Connection to {server_url} timed out")
        sys.exit(1)

    if response.status_code == 401:
        logger.error("Authentication failed - check API key")
        sys.exit(1)

    try:
        envelope = response.json()
    except ValueError:
        logger.error(f"Server error: {response.status_code}")
        logger.error(f"Response: {response.text}")
        sys.exit(1)

    return response.status_code, envelope


def list_rules_command(args, config_obj):
    """List rules command"""
    server_url, headers = _client_session(args, config_obj)
    status, envelope = _call_server('GET', server_url, '/rules', headers)

    if status != 200:
        logger.error(f"Server error: {envelope.get('error') or status}")
        sys.exit(1)

    rules = envelope['data']
    if not rules:
        logger.info("No rules found")
        return

    logger.info(f"\nRules ({len(rules)}):\n")
    logger.info(f"{'ID':<6} {'Enabled':<8} {'Trigger':<24} {'Action':<18} {'Name'}")
    logger.info("-" * 90)

    for rule in rules:
        trigger = rule['trigger_config']
        if 'Interval' in trigger:
            trigger_text = f"every {trigger['Interval']['minutes']}m"
        else:
            trigger_text = f"cron {trigger['Cron']['expression']}"
        logger.info(
            f"{rule['id']:<6} {'yes' if rule['enabled'] else 'no':<8} {trigger_text:<24} "
            f"{rule['action_config']['action_type']:<18} {rule['name']}"
        )


def run_rule_command(args, config_obj):
    """Run a rule now and print its execution log"""
    server_url, headers = _client_session(args, config_obj)
    rule_id = args.run_rule_id

    logger.info(f"Running rule {rule_id}...")
    status, envelope = _call_server('POST', server_url, f'/rules/{rule_id}/run', headers, timeout=300)

    if status == 404:
        logger.error(f"Rule not found: {rule_id}")
        sys.exit(1)
    if status == 409:
        logger.warning(f"Rule {rule_id} is already running")
        sys.exit(1)
    if status != 200:
        logger.error(f"Server error: {envelope.get('error') or status}")
        sys.exit(1)

    log = envelope['data']
    if log['success']:
        logger.info(f"✓ Rule '{log['rule_name']}' completed")
    else:
        logger.error(f"✗ Rule '{log['rule_name']}' finished with errors")
    logger.info(f"  Items processed: {log['items_processed']} of {log['total_items']}")

    for item in log.get('processed_items') or []:
        mark = '✓' if item['success'] else '✗'
        line = f"    {mark} {item['action']}: {item['name']}"
        if item.get('error'):
            line += f" ({item['error']})"
        logger.info(line)

    if log.get('error_message'):
        logger.info(f"  {log['error_message']}")

    if not log['success']:
        sys.exit(1)


def logs_command(args, config_obj):
    """Show recent executions of a rule"""
    server_url, headers = _client_session(args, config_obj)
    rule_id = args.logs_rule_id

    status, envelope = _call_server(
        'GET', server_url, f'/rules/{rule_id}/logs', headers, params={'limit': args.limit}
    )

    if status == 404:
        logger.error(f"Rule not found: {rule_id}")
        sys.exit(1)
    if status != 200:
        logger.error(f"Server error: {envelope.get('error') or status}")
        sys.exit(1)

    logs = envelope['data']
    if not logs:
        logger.info(f"No executions recorded for rule {rule_id}")
        return

    logger.info(f"\nExecutions of rule {rule_id} (showing {len(logs)}):\n")
    logger.info(f"{'Executed':<26} {'Type':<10} {'Result':<8} {'Items':<10} {'Error'}")
    logger.info("-" * 90)

    for log in logs:
        result = 'ok' if log['success'] else ('partial' if log.get('partial') else 'failed')
        items = f"{log['items_processed']}/{log['total_items']}"
        logger.info(
            f"{log['executed_at']:<26} {log['execution_type']:<10} {result:<8} {items:<10} "
            f"{log.get('error_message') or ''}"
        )


def rule_limit_command(args, config_obj):
    """Show rule count and maximum"""
    server_url, headers = _client_session(args, config_obj)
    status, envelope = _call_server('GET', server_url, '/rules/limit', headers)

    if status != 200:
        logger.error(f"Server error: {envelope.get('error') or status}")
        sys.exit(1)

    limit = envelope['data']
    logger.info(f"Rules: {limit['current_count']} of {limit['max_rules']}")


@handle_errors
def main():
    """Main entry point for torbox-rules CLI"""
    global logger

    # Parse arguments
    parser = create_parser()
    args = parser.parse_args()

    # Process arguments and get config directory
    config_dir = process_args(args)

    # Load configuration
    config = load_config(config_dir)

    # Setup logging
    trace_mode = config.get_trace_mode()
    setup_logging(config, trace_mode)
    logger = get_logger(__name__)

    # Handle utility arguments (--validate)
    if handle_utility_args(args, config):
        sys.exit(0)

    if args.serve:
        run_server_mode(args, config)
    elif args.list_rules:
        list_rules_command(args, config)
    elif args.run_rule_id is not None:
        run_rule_command(args, config)
    elif args.logs_rule_id is not None:
        logs_command(args, config)
    elif args.rule_limit:
        rule_limit_command(args, config)
    else:
        parser.print_help()
        sys.exit(1)

    sys.exit(0)


if __name__ == '__main__':
    main()
