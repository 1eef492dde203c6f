"""Rate limit rule definitions and the YAML rule file loader.

A rule file enumerates quotas in evaluation order::

    rules:
      - name: root-route
        scope: route
        max_requests: 5
        window_seconds: 60
        paths: ["/"]
      - name: hello-ip
        scope: client_ip
        max_requests: 10
        window_seconds: 60
        paths: ["/hello"]

The file is read once at startup. Anything wrong with it (missing file, bad
YAML, invalid values) raises ``ConfigError`` so the process never starts with
a partial rule set.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from quotaguard.core.errors import ConfigError
from quotaguard.utils.path_normalizer import normalize_path

logger = logging.getLogger(__name__)


class ScopeType(str, Enum):
    """Dimension along which a quota is tracked."""

    ROUTE = "route"
    CLIENT_IP = "client_ip"
    API_KEY = "api_key"

    @classmethod
    def _missing_(cls, value: object) -> "ScopeType | None":
        aliases = {
            "path": cls.ROUTE,
            "ip": cls.CLIENT_IP,
            "client_address": cls.CLIENT_IP,
            "apikey": cls.API_KEY,
        }
        if isinstance(value, str):
            return aliases.get(value.strip().lower().replace("-", "_"))
        return None


class Rule(BaseModel):
    """One quota: at most ``max_requests`` per ``window_seconds`` per scope key.

    Attributes:
        name: Unique rule identifier; namespaces the rule's counters.
        scope: Scope type used to derive the counter key.
        max_requests: Requests admitted per window (>= 1).
        window_seconds: Window length in seconds (> 0).
        paths: Normalized paths the rule applies to; None means every path.
        methods: HTTP methods the rule applies to; None means every method.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    scope: ScopeType
    max_requests: int = Field(..., ge=1)
    window_seconds: float = Field(..., gt=0)
    paths: tuple[str, ...] | None = None
    methods: tuple[str, ...] | None = None

    @field_validator("paths")
    @classmethod
    def _normalize_paths(cls, value: tuple[str, ...] | None) -> tuple[str, ...] | None:
        if value is None:
            return None
        return tuple(dict.fromkeys(normalize_path(p) for p in value))

    @field_validator("methods")
    @classmethod
    def _upper_methods(cls, value: tuple[str, ...] | None) -> tuple[str, ...] | None:
        if value is None:
            return None
        return tuple(dict.fromkeys(m.strip().upper() for m in value))

    def applies_to(self, method: str, path: str) -> bool:
        """Check whether the rule is evaluated for a request.

        Args:
            method: HTTP method of the request.
            path: Request path (normalized here before matching).

        Returns:
            True if the request falls under this rule.
        """
        if self.methods is not None and method.upper() not in self.methods:
            return False
        if self.paths is not None and normalize_path(path) not in self.paths:
            return False
        return True


class RuleSet(BaseModel):
    """Immutable, ordered collection of rules shared by all requests."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rules: tuple[Rule, ...] = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _default_rule_names(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not isinstance(data.get("rules"), list):
            return data
        named = []
        for index, rule in enumerate(data["rules"]):
            if isinstance(rule, dict) and not rule.get("name"):
                rule = {**rule, "name": f"{rule.get('scope', 'rule')}-{index}"}
            named.append(rule)
        return {**data, "rules": named}

    @model_validator(mode="after")
    def _unique_names(self) -> "RuleSet":
        seen: set[str] = set()
        for rule in self.rules:
            if rule.name in seen:
                raise ValueError(f"duplicate rule name: {rule.name!r}")
            seen.add(rule.name)
        return self


def parse_rule_set(data: Any, *, source: str = "<memory>") -> RuleSet:
    """Validate raw rule data into a RuleSet.

    Args:
        data: Parsed YAML document (expects a mapping with a ``rules`` list).
        source: Where the data came from, for error messages.

    Returns:
        RuleSet: Validated rules in declaration order.

    Raises:
        ConfigError: If the document shape or any rule value is invalid.
    """
    if not isinstance(data, dict):
        raise ConfigError(
            code="rules_invalid",
            message=f"Rule file {source} must contain a mapping with a 'rules' list",
            details={"path": source},
        )

    try:
        return RuleSet.model_validate(data)
    except ValidationError as exc:
        errors = [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
        raise ConfigError(
            code="rules_invalid",
            message=f"Invalid rate limit rules in {source}",
            details={"path": source, "errors": errors},
        ) from exc


def load_rule_set(path: str | Path) -> RuleSet:
    """Load and validate the rule file.

    Loading the same file twice yields equal RuleSets (same order and values).

    Args:
        path: Location of the YAML rule file.

    Returns:
        RuleSet: Validated, immutable rules.

    Raises:
        ConfigError: If the file is missing, unreadable, not valid YAML, or
            describes invalid rules.
    """
    rules_path = Path(path)
    try:
        raw = rules_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(
            code="rules_file_missing",
            message=f"Rate limit rule file not found: {rules_path}",
            details={"path": str(rules_path)},
        ) from exc
    except OSError as exc:
        raise ConfigError(
            code="rules_file_unreadable",
            message=f"Cannot read rate limit rule file {rules_path}: {exc}",
            details={"path": str(rules_path)},
        ) from exc

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(
            code="rules_file_malformed",
            message=f"Rate limit rule file {rules_path} is not valid YAML",
            details={"path": str(rules_path), "hint": str(exc)},
        ) from exc

    rule_set = parse_rule_set(data, source=str(rules_path))
    logger.info(
        "rate_limit.rules_loaded",
        extra={
            "rules_path": str(rules_path),
            "rule_count": len(rule_set.rules),
            "rule_names": [rule.name for rule in rule_set.rules],
        },
    )
    return rule_set
