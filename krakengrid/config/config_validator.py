"""
Startup checks for Settings.

Errors block startup; warnings are logged and the client runs with reduced
capability (e.g. public market data only when credentials are missing).
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ValidationSeverity(Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None

    def render(self) -> str:
        prefix = "CONFIG ERROR" if self.severity is ValidationSeverity.ERROR else "CONFIG WARNING"
        text = f"{prefix}: {self.message}"
        return f"{text} (suggestion: {self.suggestion})" if self.suggestion else text


@dataclass
class ValidationResult:
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.get_errors()

    def has_errors(self) -> bool:
        return bool(self.get_errors())

    def get_errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity is ValidationSeverity.ERROR]

    def get_warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity is ValidationSeverity.WARNING]


class ConfigValidator:
    # field, min, max
    NUMERIC_RANGES: Tuple[Tuple[str, float, float], ...] = (
        ("http_timeout", 0.5, 120.0),
        ("request_timeout", 1.0, 300.0),
        ("heartbeat_sec", 0.0, 600.0),
        ("reconnect_base_sec", 0.01, 60.0),
        ("reconnect_max_attempts", 0, 100),
        ("metrics_port", 0, 65535),
    )

    URL_SCHEMES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
        ("rest_url", ("https://", "http://")),
        ("ws_public_url", ("wss://", "ws://")),
        ("ws_private_url", ("wss://", "ws://")),
    )

    def validate(self, cfg) -> ValidationResult:
        result = ValidationResult()
        self._check_ranges(cfg, result.issues)
        self._check_urls(cfg, result.issues)
        self._check_credentials(cfg, result.issues)
        if not getattr(cfg, "default_symbol", ""):
            result.issues.append(ValidationIssue(
                "default_symbol", "Default symbol is empty", ValidationSeverity.ERROR,
                suggestion="Set KRAKEN_DEFAULT_SYMBOL, e.g. BTC/USD",
            ))
        return result

    def _check_ranges(self, cfg, issues: List[ValidationIssue]) -> None:
        for name, lo, hi in self.NUMERIC_RANGES:
            raw = getattr(cfg, name, None)
            try:
                value = float(raw)
            except (TypeError, ValueError):
                issues.append(ValidationIssue(name, f"'{name}' is not a number: {raw!r}", ValidationSeverity.ERROR, raw))
                continue
            if not lo <= value <= hi:
                issues.append(ValidationIssue(
                    name,
                    f"'{name}' = {value} is outside [{lo}, {hi}]",
                    ValidationSeverity.ERROR,
                    value,
                    suggestion=f"Use a value between {lo} and {hi}",
                ))

    def _check_urls(self, cfg, issues: List[ValidationIssue]) -> None:
        for name, schemes in self.URL_SCHEMES:
            url = getattr(cfg, name, "") or ""
            if not url.startswith(schemes):
                issues.append(ValidationIssue(
                    name, f"'{name}' must start with {' or '.join(schemes)}", ValidationSeverity.ERROR, url,
                ))

    def _check_credentials(self, cfg, issues: List[ValidationIssue]) -> None:
        for name, env_key in (("api_key", "KRAKEN_API_KEY"), ("api_secret", "KRAKEN_API_PRIVATE_KEY")):
            if not getattr(cfg, name, None):
                issues.append(ValidationIssue(
                    name,
                    f"{env_key} is not set; private trading channel disabled",
                    ValidationSeverity.WARNING,
                    suggestion=f"Add {env_key} to local.env",
                ))
        secret = getattr(cfg, "api_secret", None)
        if not secret:
            return
        try:
            base64.b64decode(secret, validate=True)
        except (binascii.Error, ValueError):
            issues.append(ValidationIssue(
                "api_secret",
                "KRAKEN_API_PRIVATE_KEY is not valid base64",
                ValidationSeverity.ERROR,
                suggestion="Copy the private key exactly as shown by Kraken",
            ))


def validate_config(cfg) -> ValidationResult:
    return ConfigValidator().validate(cfg)


def validate_and_log(cfg, logger_instance=None) -> bool:
    """Validate cfg, log every issue, and return True when startup may proceed."""
    log = logger_instance or logger
    result = validate_config(cfg)
    for issue in result.get_errors():
        log.error(issue.render())
    for issue in result.get_warnings():
        log.warning(issue.render())
    if result.valid:
        log.info("Configuration validation passed")
    else:
        log.error(f"Configuration validation failed with {len(result.get_errors())} error(s)")
    return result.valid
