"""
Argument parsing for the torbox-rules CLI
"""

import os
import sys
import argparse
from pathlib import Path

from torbox_rules.__version__ import __version__, __description__


def smart_config_default() -> str:
    """
    Determine smart default for config directory

    Returns ./config if it exists (bare metal), otherwise /config (Docker)
    """
    local_config = Path('./config')
    if local_config.exists() and local_config.is_dir():
        return './config'
    return '/config'


def create_parser() -> argparse.ArgumentParser:
    """
    Create argument parser for server and client commands

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog='torbox-rules',
        description=f'torbox-rules - {__description__}',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    # Common configuration arguments
    parser.add_argument(
        '--config-dir',
        type=Path,
        default=None,
        help=f'Path to configuration directory (default: {smart_config_default()} or CONFIG_DIR env var)'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Set logging verbosity (default: from config or INFO)'
    )

    parser.add_argument(
        '--trace',
        action='store_true',
        help='Enable trace mode with detailed logging (module/function/line)'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'torbox-rules v{__version__}'
    )

    parser.add_argument(
        '--validate',
        action='store_true',
        help='Validate configuration and database without running'
    )

    # Server mode
    server = parser.add_argument_group('server')
    server.add_argument('--serve', action='store_true', help='Run the HTTP API server and scheduler')
    server.add_argument('--server-host', help='Bind address (default: 0.0.0.0)')
    server.add_argument('--server-port', type=int, help='Bind port (default: 5000)')
    server.add_argument('--server-threads', type=int, help='Request handler threads (default: 8)')

    # Client mode
    client = parser.add_argument_group('client')
    client.add_argument('--client-server-url', help='Server URL (default: http://localhost:5000)')
    client.add_argument('--client-api-key', help='Your TorBox API key')
    client.add_argument('--list-rules', action='store_true', help='List your rules')
    client.add_argument('--run', dest='run_rule_id', type=int, metavar='RULE_ID',
                        help='Run a rule immediately and show the result')
    client.add_argument('--logs', dest='logs_rule_id', type=int, metavar='RULE_ID',
                        help='Show recent executions of a rule')
    client.add_argument('--limit', type=int, default=20, help='Number of log entries to show (default: 20)')
    client.add_argument('--rule-limit', action='store_true', help='Show rule count and maximum')

    parser.epilog = '''
Examples:
  # Start the server
  torbox-rules --serve

  # List your rules on a running server
  torbox-rules --client-api-key $TORBOX_API_KEY --list-rules

  # Run rule 3 now
  torbox-rules --client-api-key $TORBOX_API_KEY --run 3

  # Show the last 5 executions of rule 3
  torbox-rules --client-api-key $TORBOX_API_KEY --logs 3 --limit 5
    '''

    return parser


def process_args(args: argparse.Namespace) -> Path:
    """
    Process parsed arguments and set environment variables

    Args:
        args: Parsed arguments from argparse

    Returns:
        Path to configuration directory
    """
    if args.log_level:
        os.environ['LOG_LEVEL'] = args.log_level

    if args.trace:
        os.environ['TRACE_MODE'] = 'true'

    if args.config_dir:
        config_dir = args.config_dir
    elif 'CONFIG_DIR' in os.environ:
        config_dir = Path(os.environ['CONFIG_DIR'])
    else:
        config_dir = Path(smart_config_default())

    return config_dir


def handle_utility_args(args: argparse.Namespace, config) -> bool:
    """
    Handle utility arguments (--validate)

    Args:
        args: Parsed arguments
        config: Loaded configuration object

    Returns:
        True if a utility argument was handled (should exit), False otherwise
    """
    from torbox_rules.logging import get_logger
    from torbox_rules.store import RuleStore

    logger = get_logger(__name__)

    if not args.validate:
        return False

    logger.info("Validating configuration and database...")

    automation = config.get_automation_config()
    torbox = config.get_torbox_config()
    logger.info(f"✓ TorBox API: {torbox['api_base']} (timeout {torbox['timeout']}s)")
    logger.info(f"✓ Max rules per API key: {automation['max_rules_per_user']}")
    logger.info(f"✓ Tick interval: {automation['tick_interval']}s, "
                f"{automation['max_concurrent_runs']} concurrent runs")

    store = RuleStore(config.get_database_path())
    try:
        store.initialize_encryption()
        if not store.health_check():
            logger.error("Database is not accessible")
            sys.exit(1)
        rules = store.get_all_enabled_rules()
        logger.info(f"✓ Database: {store.db_path} ({len(rules)} enabled rules)")
    finally:
        store.close()

    logger.info("\nValidation complete! Configuration is valid.")
    return True
