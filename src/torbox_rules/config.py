"""
Configuration loader with environment variable expansion and universal _FILE support

Resolution order (highest to lowest priority):
1. CLI arguments
2. Environment variable _FILE variant (reads from file)
3. Environment variable (direct value)
4. Config file
5. Default value
"""

import os
import re
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from torbox_rules.errors import ConfigurationError


# Environment variable mapping
# Maps config keys to environment variable names
ENV_VAR_MAP = {
    # Server configuration
    'server.host': 'TORBOX_RULES_SERVER_HOST',
    'server.port': 'TORBOX_RULES_SERVER_PORT',
    'server.threads': 'TORBOX_RULES_SERVER_THREADS',

    # Storage
    'database.path': 'TORBOX_RULES_DB_PATH',

    # Automation
    'automation.max_rules_per_user': 'TORBOX_RULES_MAX_RULES_PER_USER',
    'automation.log_retention_days': 'TORBOX_RULES_LOG_RETENTION_DAYS',
    'automation.execution_timeout': 'TORBOX_RULES_EXECUTION_TIMEOUT',
    'automation.tick_interval': 'TORBOX_RULES_TICK_INTERVAL',
    'automation.max_concurrent_runs': 'TORBOX_RULES_MAX_CONCURRENT_RUNS',

    # TorBox API
    'torbox.api_base': 'TORBOX_RULES_API_BASE',
    'torbox.timeout': 'TORBOX_RULES_API_TIMEOUT',

    # Client configuration
    'client.server_url': 'TORBOX_RULES_CLIENT_SERVER_URL',
    'client.api_key': 'TORBOX_RULES_CLIENT_API_KEY',

    # Logging
    'logging.level': 'TORBOX_RULES_LOG_LEVEL',
    'logging.file': 'TORBOX_RULES_LOG_FILE',
    'logging.trace_mode': 'TORBOX_RULES_LOG_TRACE_MODE',
}

DEFAULTS = {
    'server.host': '0.0.0.0',
    'server.port': 5000,
    'server.threads': 8,
    'database.path': 'data/torbox.db',
    'automation.max_rules_per_user': 100,
    'automation.log_retention_days': 90,
    'automation.execution_timeout': 130,
    'automation.tick_interval': 60,
    'automation.max_concurrent_runs': 4,
    'torbox.api_base': 'https://api.torbox.app',
    'torbox.timeout': 10,
    'client.server_url': 'http://localhost:5000',
    'logging.level': 'INFO',
    'logging.file': 'logs/torbox-rules.log',
    'logging.trace_mode': False,
}

_TRUE_VALUES = ('true', '1', 'yes', 'on')
_FALSE_VALUES = ('false', '0', 'no', 'off')


def get_nested_config(config: Dict[str, Any], key: str) -> Optional[Any]:
    """
    Get nested configuration value using dot notation

    Args:
        config: Configuration dictionary
        key: Dot-notation key (e.g., 'server.host')

    Returns:
        Configuration value or None if not found

    Examples:
        >>> config = {'server': {'host': 'localhost', 'port': 5000}}
        >>> get_nested_config(config, 'server.host')
        'localhost'
        >>> get_nested_config(config, 'server.missing')
        None
    """
    keys = key.split('.')
    value = config

    for k in keys:
        if isinstance(value, dict) and k in value:
            value = value[k]
        else:
            return None

    return value


def parse_bool(value: Any) -> bool:
    """
    Parse boolean from various formats

    Examples:
        >>> parse_bool('true')
        True
        >>> parse_bool(0)
        False
        >>> parse_bool(None)
        False
    """
    if value is None:
        return False

    if isinstance(value, bool):
        return value

    if isinstance(value, int):
        return value != 0

    if isinstance(value, str):
        return value.lower() in _TRUE_VALUES

    return bool(value)


def parse_int(value: Any, default: int = 0) -> int:
    """
    Parse integer from various formats

    Args:
        value: Value to parse
        default: Default value if parsing fails

    Returns:
        Integer value
    """
    if value is None:
        return default

    if isinstance(value, bool):
        return int(value)

    if isinstance(value, int):
        return value

    try:
        return int(str(value).strip())
    except (ValueError, TypeError):
        return default


def resolve_config(
    cli_value: Optional[Any],
    env_var: str,
    config: Dict[str, Any],
    config_key: str,
    default: Optional[Any] = None
) -> Any:
    """
    Universal configuration resolver with _FILE support

    Resolution order:
    1. CLI argument (if provided)
    2. Environment variable _FILE variant (reads file content)
    3. Environment variable (direct value)
    4. Config file value
    5. Default value

    Examples:
        >>> resolve_config(
        ...     cli_value=None,
        ...     env_var='TORBOX_RULES_SERVER_PORT',
        ...     config={'server': {'port': 5000}},
        ...     config_key='server.port',
        ...     default=8080
        ... )
        5000
    """
    # 1. CLI argument takes highest priority
    if cli_value is not None:
        return cli_value

    # 2. Check _FILE variant (universal support)
    file_var = f"{env_var}_FILE"
    if file_var in os.environ:
        file_path = os.environ[file_var]
        try:
            with open(file_path, 'r') as f:
                content = f.read().strip()
            logging.debug(f"Loaded config from file: {file_var}={file_path}")
            return content
        except FileNotFoundError:
            logging.warning(f"File not found for {file_var}: {file_path}")
        except PermissionError:
            logging.warning(f"Permission denied reading {file_var}: {file_path}")
        except OSError as e:
            logging.warning(f"Error reading {file_var} from {file_path}: {e}")

    # 3. Direct environment variable
    if env_var in os.environ:
        logging.debug(f"Loaded config from env: {env_var}")
        return os.environ[env_var]

    # 4. Config file value
    if config:
        value = get_nested_config(config, config_key)
        if value is not None:
            logging.debug(f"Loaded config from file: {config_key}={value}")
            return value

    # 5. Default value
    logging.debug(f"Using default config: {config_key}={default}")
    return default


def expand_env_vars(value: Any) -> Any:
    """
    Recursively expand environment variables in configuration values

    Supports format: ${VAR_NAME:-default_value}

    Examples:
        >>> os.environ['TEST_VAR'] = 'hello'
        >>> expand_env_vars('${TEST_VAR:-default}')
        'hello'
        >>> expand_env_vars('${MISSING_VAR:-default}')
        'default'
    """
    if isinstance(value, str):
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ''
            return os.environ.get(var_name, default_value)

        return re.sub(pattern, replacer, value)

    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]

    else:
        return value


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file with error handling

    Args:
        file_path: Path to YAML file

    Returns:
        Parsed YAML as dictionary (empty dict for an empty file)

    Raises:
        ConfigurationError: If file cannot be loaded
    """
    try:
        with open(file_path, 'r') as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(str(file_path), "File does not exist")
    except yaml.YAMLError as e:
        raise ConfigurationError(str(file_path), f"Invalid YAML syntax: {str(e)}")
    except PermissionError:
        raise ConfigurationError(str(file_path), "Permission denied - cannot read file")
    except OSError as e:
        raise ConfigurationError(str(file_path), f"Cannot read file: {str(e)}")

    if content is None:
        return {}

    if not isinstance(content, dict):
        raise ConfigurationError(str(file_path), "Top level must be a mapping")

    return content


class Config:
    """Configuration manager"""

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize configuration

        Args:
            config_dir: Directory containing config.yml
                       Defaults to CONFIG_DIR env var or /config
        """
        if config_dir is None:
            config_dir = Path(os.environ.get('CONFIG_DIR', '/config'))

        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / 'config.yml'

        self._load_config()

    def _load_config(self):
        """Load config.yml with environment variable expansion"""
        if not self.config_file.exists():
            logging.debug(f"No config file at {self.config_file}, using defaults")
            self.config = {}
            return

        logging.debug(f"Loading config from {self.config_file}")
        self.config = expand_env_vars(load_yaml_file(self.config_file))
        logging.debug("Configuration loaded successfully")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation key

        Args:
            key: Configuration key (e.g., 'automation.tick_interval')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value = get_nested_config(self.config, key)
        return default if value is None else value

    def resolve(self, key: str, cli_value: Optional[Any] = None) -> Any:
        """Resolve a key through CLI, env (_FILE), file and built-in defaults"""
        return resolve_config(
            cli_value,
            ENV_VAR_MAP.get(key, ''),
            self.config,
            key,
            default=DEFAULTS.get(key)
        )

    def resolve_int(self, key: str, cli_value: Optional[Any] = None) -> int:
        """Resolve a key as integer, falling back to the built-in default"""
        return parse_int(self.resolve(key, cli_value), default=DEFAULTS.get(key, 0))

    def get_database_path(self) -> Path:
        """
        Get database path

        Relative paths are resolved against CONFIG_DIR.
        """
        db_path = Path(self.resolve('database.path'))
        if not db_path.is_absolute():
            db_path = self.config_dir / db_path
        return db_path

    def get_automation_config(self) -> Dict[str, int]:
        """Get scheduler and rule-limit settings"""
        return {
            'max_rules_per_user': self.resolve_int('automation.max_rules_per_user'),
            'log_retention_days': self.resolve_int('automation.log_retention_days'),
            'execution_timeout': self.resolve_int('automation.execution_timeout'),
            'tick_interval': self.resolve_int('automation.tick_interval'),
            'max_concurrent_runs': self.resolve_int('automation.max_concurrent_runs'),
        }

    def get_torbox_config(self) -> Dict[str, Any]:
        """Get TorBox API connection settings"""
        return {
            'api_base': str(self.resolve('torbox.api_base')).rstrip('/'),
            'timeout': self.resolve_int('torbox.timeout'),
        }

    def get_log_level(self) -> str:
        """Get logging level (LOG_LEVEL, set by --log-level, wins)"""
        return str(os.environ.get('LOG_LEVEL') or self.resolve('logging.level')).upper()

    def get_log_file(self) -> Path:
        """
        Get log file path

        If path is relative, make it relative to CONFIG_DIR.
        """
        log_path = Path(os.environ.get('LOG_FILE') or self.resolve('logging.file'))

        if not log_path.is_absolute():
            log_path = self.config_dir / log_path

        return log_path

    def get_trace_mode(self) -> bool:
        """Check if trace mode is enabled (detailed logging with module/function/line)"""
        env_trace = os.environ.get('TRACE_MODE', '').lower()
        if env_trace in _TRUE_VALUES:
            return True
        elif env_trace in _FALSE_VALUES:
            return False

        return parse_bool(self.resolve('logging.trace_mode'))


def load_config(config_dir: Optional[Path] = None) -> Config:
    """
    Load configuration from directory

    Args:
        config_dir: Directory containing config.yml

    Returns:
        Config object
    """
    return Config(config_dir)
