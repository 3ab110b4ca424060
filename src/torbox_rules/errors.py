"""
User-friendly error handling for TorBox automation rules
Provides clear, actionable error messages without Python stack traces
"""

import sys
from typing import Optional

from torbox_rules.logging import get_logger

logger = get_logger(__name__)


class TorboxRulesError(Exception):
    """Base exception for all torbox-rules errors"""

    def __init__(self, code: str, message: str, details: Optional[dict] = None, fix: Optional[str] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        self.fix = fix
        super().__init__(self.format_error())

    def format_error(self) -> str:
        """Format error message for user display"""
        lines = [self.message]

        if self.details:
            for key, value in self.details.items():
                lines.append(f"  • {key}: {value}")

        if self.fix:
            lines.append(f"  • Fix: {self.fix}")

        return "\n".join(lines)


# ============================================================================
# Configuration & startup
# ============================================================================

class ConfigurationError(TorboxRulesError):
    """Configuration file error"""

    def __init__(self, file_path: str, reason: str):
        super().__init__(
            code="CFG-001",
            message="Cannot load configuration",
            details={
                "File": file_path,
                "Problem": reason
            },
            fix="Check that the configuration file has valid YAML syntax"
        )


# ============================================================================
# Persistence
# ============================================================================

class PersistenceError(TorboxRulesError):
    """Database operation failed"""

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        super().__init__(
            code="DB-001",
            message=f"Database operation failed: {operation}",
            details={"Problem": reason},
            fix="Check that the database file is writable and not corrupted"
        )


# ============================================================================
# Cryptography
# ============================================================================

class EncryptionKeyError(TorboxRulesError):
    """Server encryption key is missing or malformed (fatal at startup)"""

    def __init__(self, reason: str):
        super().__init__(
            code="KEY-001",
            message="Server encryption key is unusable",
            details={"Problem": reason},
            fix="Restore the original database, or start from a fresh database to generate a new key"
        )


class DecryptionError(TorboxRulesError):
    """Stored credential could not be decrypted"""

    def __init__(self, reason: str):
        super().__init__(
            code="KEY-002",
            message="Cannot decrypt stored API key",
            details={"Problem": reason},
            fix="Save the API key again by editing any rule with it"
        )


# ============================================================================
# Validation
# ============================================================================

class RuleValidationError(TorboxRulesError):
    """Rule configuration is invalid"""

    def __init__(self, rule_name: str, reason: str):
        self.reason = reason
        super().__init__(
            code="RULE-001",
            message="Invalid rule configuration",
            details={
                "Rule": rule_name,
                "Problem": reason
            },
            fix="Check the rule's trigger, conditions and action"
        )


class RuleLimitError(TorboxRulesError):
    """Tenant reached the maximum number of rules"""

    def __init__(self, current_count: int, max_rules: int):
        self.current_count = current_count
        self.max_rules = max_rules
        super().__init__(
            code="RULE-002",
            message=f"Maximum rule limit ({max_rules}) reached for this API key",
            details={
                "Current rules": current_count,
                "Maximum": max_rules
            },
            fix="Delete unused rules before creating new ones"
        )


class RuleNotFoundError(TorboxRulesError):
    """Rule does not exist for this tenant"""

    def __init__(self, rule_id: int):
        self.rule_id = rule_id
        super().__init__(
            code="RULE-003",
            message=f"Rule {rule_id} not found or access denied",
            details={"Rule ID": rule_id},
            fix="List your rules to find a valid rule ID"
        )


class CredentialNotFoundError(TorboxRulesError):
    """No stored API key for this tenant hash"""

    def __init__(self, tenant_hash: str):
        super().__init__(
            code="KEY-003",
            message="No stored API key for this rule owner",
            details={"Owner": f"{tenant_hash[:12]}…"},
            fix="Create or update a rule with the API key to store it"
        )


# ============================================================================
# Download service
# ============================================================================

class DownloadServiceError(TorboxRulesError):
    """TorBox API call failed"""

    def __init__(
        self,
        endpoint: str,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None,
        code: str = "API-001",
        message: str = "TorBox API request failed",
        fix: str = "Check TorBox status and the rule's API key"
    ):
        self.endpoint = endpoint
        self.status_code = status_code
        self.response_text = response_text[:200] if response_text else None

        details = {"Endpoint": endpoint}
        if status_code is not None:
            details["Status Code"] = status_code
        if self.response_text:
            details["Response"] = self.response_text

        super().__init__(code=code, message=message, details=details, fix=fix)

    @property
    def is_transient(self) -> bool:
        """Gateway errors worth retrying"""
        return self.status_code in (502, 503, 504, 530)

    @property
    def summary(self) -> str:
        """One-line description for execution logs"""
        if self.status_code is None:
            return self.message
        if self.response_text:
            return f"HTTP {self.status_code}: {self.response_text}"
        return f"HTTP {self.status_code}: {self.message}"


class AuthenticationError(DownloadServiceError):
    """TorBox rejected the API key"""

    def __init__(self, endpoint: str, status_code: int = 401, response_text: Optional[str] = None):
        super().__init__(
            endpoint,
            status_code,
            response_text,
            code="AUTH-001",
            message="TorBox rejected the API key",
            fix="Check that the API key is still valid"
        )


class RateLimitError(DownloadServiceError):
    """TorBox rate limit hit"""

    def __init__(self, endpoint: str, response_text: Optional[str] = None):
        super().__init__(
            endpoint,
            429,
            response_text,
            code="API-002",
            message="TorBox rate limit exceeded",
            fix="Reduce how often rules run"
        )


class ConnectionError(DownloadServiceError):
    """Cannot reach TorBox API"""

    def __init__(self, endpoint: str, original_error: str):
        super().__init__(
            endpoint,
            response_text=str(original_error),
            code="CONN-001",
            message="Cannot reach TorBox API",
            fix="Check network connectivity and torbox.api_base"
        )

    @property
    def is_transient(self) -> bool:
        return True

    @property
    def summary(self) -> str:
        return f"Network error: {self.response_text}"


def handle_errors(func):
    """Decorator for user-friendly error handling"""
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except TorboxRulesError as e:
            # Our custom errors - display nicely
            logger.error(str(e))
            sys.exit(1)
        except KeyboardInterrupt:
            logger.info("\nOperation cancelled by user")
            sys.exit(0)
        except Exception as e:
            # Unexpected error - show generic message
            logger.error("Unexpected error occurred")
            logger.error(f"  • Error: {type(e).__name__}: {str(e)}")
            logger.error("  • Fix: Please report this issue with the error details above")
            logger.debug("Full stack trace:", exc_info=True)
            sys.exit(1)
    return wrapper
