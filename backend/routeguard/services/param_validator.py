"""
RouteGuard Backend — Route Parameter Validation
=================================================

What:  Validates placeholder values extracted from the request path against
       the rules declared in the route document (`params: {id: "id"}`).
Why:   Handlers receive parameters that are already known to be well-formed,
       so a `/todo/{id}` handler never has to guard against `id = "abc"`.
How:   Rule strings are compiled ONCE at route-table build time into
       ParamRule values. Each kind maps to a pure check function in a
       table keyed by RuleKind; the two parametric kinds carry their
       arguments (compiled regex, length bounds) on the rule itself.

Rule string grammar:
    "<kind>[,<kind>...]"  every kind must pass; the first failure per
                          parameter is reported
    "regex:<pattern>"     consumes the rest of the string, commas included,
                          so it must be the last kind. `/pattern/flags`
                          delimiters are accepted (flags: i, m, s, x, u).
    "length:<min>:<max>"  inclusive character-count bounds

Unknown kinds are logged at compile time and skipped, so a route document
written for a newer release still loads.
"""

import datetime
import enum
import logging
import math
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Mapping, Optional, Pattern, Sequence, Tuple

from routeguard.exceptions import ConfigurationError

if TYPE_CHECKING:
    from routeguard.services.route_registry import RouteTable

logger = logging.getLogger(__name__)


class RuleKind(str, enum.Enum):
    ID = "id"
    INTEGER = "integer"
    POSITIVE = "positive"
    UUID = "uuid"
    SLUG = "slug"
    ALPHA = "alpha"
    ALPHANUMERIC = "alphanumeric"
    EMAIL = "email"
    DATE = "date"
    NO_WHITESPACE = "noWhitespace"
    REGEX = "regex"
    LENGTH = "length"


# ── Check Functions ───────────────────────────────────────────────────────

# Applied with fullmatch; ASCII digits only
_INTEGER_RE = re.compile(r"[+-]?\d+", re.ASCII)
_NUMBER_RE = re.compile(r"[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?", re.ASCII)
_UUID_RE = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)
_SLUG_RE = re.compile(r"[a-z0-9]+(?:-[a-z0-9]+)*")
_ALPHA_RE = re.compile(r"[A-Za-z]+")
_ALNUM_RE = re.compile(r"[A-Za-z0-9]+")
_EMAIL_RE = re.compile(r"[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)+")
_DATE_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})", re.ASCII)


def _is_id(value: str) -> bool:
    return bool(_INTEGER_RE.fullmatch(value)) and int(value) > 0


def _is_integer(value: str) -> bool:
    return bool(_INTEGER_RE.fullmatch(value))


def _is_positive(value: str) -> bool:
    if not _NUMBER_RE.fullmatch(value):
        return False
    number = float(value)
    return math.isfinite(number) and number > 0


def _is_date(value: str) -> bool:
    match = _DATE_RE.fullmatch(value)
    if not match:
        return False
    year, month, day = (int(part) for part in match.groups())
    try:
        datetime.date(year, month, day)
    except ValueError:
        return False
    return True


def _has_no_whitespace(value: str) -> bool:
    return not any(ch.isspace() for ch in value)


# What: Kind → (check, message suffix). Built once at import.
_RULE_TABLE: Dict[RuleKind, Tuple[Callable[[str], bool], str]] = {
    RuleKind.ID: (_is_id, "must be a positive integer"),
    RuleKind.INTEGER: (_is_integer, "must be an integer"),
    RuleKind.POSITIVE: (_is_positive, "must be a positive number"),
    RuleKind.UUID: (lambda v: bool(_UUID_RE.fullmatch(v)), "must be a valid UUID"),
    RuleKind.SLUG: (
        lambda v: bool(_SLUG_RE.fullmatch(v)),
        "must be a valid URL slug (lowercase letters, numbers, and hyphens)",
    ),
    RuleKind.ALPHA: (lambda v: bool(_ALPHA_RE.fullmatch(v)), "must contain only letters"),
    RuleKind.ALPHANUMERIC: (
        lambda v: bool(_ALNUM_RE.fullmatch(v)),
        "must contain only letters and numbers",
    ),
    RuleKind.EMAIL: (lambda v: bool(_EMAIL_RE.fullmatch(v)), "must be a valid email address"),
    RuleKind.DATE: (_is_date, "must be a valid date"),
    RuleKind.NO_WHITESPACE: (_has_no_whitespace, "must not contain whitespace"),
}

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE, "u": 0}
_REGEX_DELIMITERS = "/#~@!%|"


# ── Compiled Rules ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ParamRule:
    """
    One compiled validation kind.

    `pattern` is set only for REGEX, `min_length`/`max_length` only for LENGTH.
    """

    kind: RuleKind
    pattern: Optional[Pattern[str]] = None
    min_length: int = 0
    max_length: int = 0

    def check(self, param: str, value: str) -> Optional[str]:
        """Return the error message for `value`, or None when it passes."""
        if self.kind is RuleKind.REGEX:
            if self.pattern is not None and self.pattern.search(value) is None:
                return f"Parameter '{param}' does not match required format"
            return None
        if self.kind is RuleKind.LENGTH:
            if not self.min_length <= len(value) <= self.max_length:
                return (
                    f"Parameter '{param}' must be between {self.min_length} "
                    f"and {self.max_length} characters"
                )
            return None
        check, message = _RULE_TABLE[self.kind]
        if not check(value):
            return f"Invalid {param}: {message}"
        return None


def _compile_regex(raw: str, param: str) -> Pattern[str]:
    body, flags = raw, 0
    if len(raw) >= 2 and raw[0] in _REGEX_DELIMITERS:
        delimiter = raw[0]
        end = raw.rfind(delimiter)
        if end > 0:
            body = raw[1:end]
            for flag in raw[end + 1:]:
                if flag not in _REGEX_FLAGS:
                    raise ConfigurationError(
                        f"Invalid regex flag '{flag}' for parameter '{param}'",
                        context={"pattern": raw},
                    )
                flags |= _REGEX_FLAGS[flag]
    try:
        return re.compile(body, flags)
    except re.error as e:
        raise ConfigurationError(
            f"Invalid regex for parameter '{param}': {e}",
            context={"pattern": raw},
        ) from e


def _compile_length(token: str, param: str) -> ParamRule:
    parts = token.split(":")
    try:
        if len(parts) != 3:
            raise ValueError("expected length:<min>:<max>")
        low, high = int(parts[1]), int(parts[2])
        if low < 0 or high < low:
            raise ValueError("bounds must satisfy 0 <= min <= max")
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid length rule '{token}' for parameter '{param}': {e}",
        ) from e
    return ParamRule(kind=RuleKind.LENGTH, min_length=low, max_length=high)


def parse_rule_string(param: str, rule_string: str) -> Tuple[ParamRule, ...]:
    """
    Compile a rule string such as "id" or "alpha,length:2:20".

    Raises:
        ConfigurationError for an invalid regex or malformed length rule.
        Unknown kinds are logged and dropped.
    """
    rules = []
    remaining = rule_string.strip()
    while remaining:
        if remaining.startswith("regex:"):
            rules.append(
                ParamRule(kind=RuleKind.REGEX, pattern=_compile_regex(remaining[len("regex:"):], param))
            )
            break
        token, _, remaining = remaining.partition(",")
        token = token.strip()
        remaining = remaining.strip()
        if not token:
            continue
        if token.startswith("length:"):
            rules.append(_compile_length(token, param))
            continue
        try:
            kind = RuleKind(token)
        except ValueError:
            logger.warning("Unknown validation type '%s' for parameter '%s' — skipped", token, param)
            continue
        if kind in (RuleKind.REGEX, RuleKind.LENGTH):
            raise ConfigurationError(f"Rule '{token}' for parameter '{param}' needs arguments")
        rules.append(ParamRule(kind=kind))
    return tuple(rules)


# ── Validator ─────────────────────────────────────────────────────────────

class ParameterValidator:
    """
    Applies compiled parameter rules to extracted path parameters.

    Only parameters present in the extracted set are checked; a rule for a
    placeholder the path did not carry is a no-op. Every failing parameter
    is reported, each with its first failing rule.
    """

    def __init__(self, table: "RouteTable"):
        self._table = table

    def validate(self, path: str, params: Mapping[str, str]) -> Dict[str, str]:
        """Look up the rules for `path` and validate `params` against them."""
        return self.validate_rules(self._table.param_rules_for(path), params)

    @staticmethod
    def validate_rules(
        rules: Mapping[str, Sequence[ParamRule]],
        params: Mapping[str, str],
    ) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        for param, param_rules in rules.items():
            if param not in params:
                continue
            value = str(params[param])
            for rule in param_rules:
                message = rule.check(param, value)
                if message is not None:
                    errors[param] = message
                    break
        if errors:
            logger.warning("Parameter validation failed: %s", errors)
        return errors
