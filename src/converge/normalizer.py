"""Value normalization for attribute diffs.

This module handles semantic equivalence between declared attributes and
the attributes recorded in the state snapshot, so that values which are
syntactically different but semantically equal never produce a change.

COMMON FALSE POSITIVES HANDLED:
1. Empty array [] vs {} vs "" vs null vs missing property
2. String "true" vs boolean true
3. Numeric string "100" vs 100
4. Case differences in enums and locations (e.g. "WestEurope" vs "westeurope")
5. Whitespace differences in multi-line strings
6. Array ordering for unordered collections
7. Default values the provider fills in

Rules are matched by resource type and attribute path globs. ``*`` matches
one path segment, ``**`` any number of segments. Providers contribute
their own rules on top of the defaults below.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any

from .expressions import UNKNOWN

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], {}, "", null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Boolean normalization: "true", "True", True, 1 are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Numeric string normalization: "100" == 100
    NUMERIC_STRING = "numeric_string"

    # Case normalization for enums/strings
    CASE_INSENSITIVE = "case_insensitive"

    # Whitespace normalization for multi-line strings
    WHITESPACE_NORMALIZE = "whitespace_normalize"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"

    # Default value equivalence
    DEFAULT_VALUE = "default_value"


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> re.Pattern[str]:
    """Convert a glob with * and ** into a compiled regex."""
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i : i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        else:
            regex_pattern += re.escape(pattern[i])
            i += 1
    regex_pattern += "$"
    return re.compile(regex_pattern)


def glob_match(value: str, pattern: str) -> bool:
    """Case-insensitive glob match of a type name or attribute path."""
    if pattern == "*":
        return True
    return bool(_glob_regex(pattern.lower()).match(value.lower()))


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        resource_type: Resource type to match (supports wildcards)
        path_pattern: Attribute path pattern to match (supports wildcards)
        normalization_type: Type of normalization to apply
        params: Additional parameters for the normalization
        reason: Human-readable explanation
    """

    resource_type: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict, hash=False)
    reason: str = ""

    def matches(self, resource_type: str, path: str) -> bool:
        """Check if this rule applies to a resource type and attribute path."""
        return glob_match(resource_type, self.resource_type) and glob_match(
            path, self.path_pattern
        )


# Default normalization rules, valid for every provider
DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        resource_type="*",
        path_pattern="tags",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty tags equal null/missing",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="**.tags",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty tags equal null/missing",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="**.enabled",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean enabled flags may be string or bool",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="**.description",
        normalization_type=NormalizationType.WHITESPACE_NORMALIZE,
        reason="Free-text descriptions ignore surrounding whitespace",
    ),
]


class DiffNormalizer:
    """Normalizes attribute values to handle semantic equivalence."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        """Initialize normalizer.

        Args:
            rules: Custom normalization rules (e.g. provider rules).
            enable_default_rules: Whether to include default rules.
        """
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    @property
    def rules(self) -> list[NormalizationRule]:
        return list(self._rules)

    def normalize_value(self, value: Any, resource_type: str, path: str) -> Any:
        """Normalize a value based on applicable rules.

        Args:
            value: The value to normalize.
            resource_type: Resource type name.
            path: Dotted attribute path.

        Returns:
            Normalized value.
        """
        if value is UNKNOWN:
            return value

        normalized = value
        for rule in self._rules:
            if rule.matches(resource_type, path):
                normalized = self._apply_normalization(normalized, rule)
        return normalized

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return self._normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return self._normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return self._normalize_numeric_string(value)
            case NormalizationType.CASE_INSENSITIVE:
                return self._normalize_case(value)
            case NormalizationType.WHITESPACE_NORMALIZE:
                return self._normalize_whitespace(value)
            case NormalizationType.ARRAY_UNORDERED:
                return self._normalize_array_order(value)
            case NormalizationType.DEFAULT_VALUE:
                return self._normalize_default(value, rule.params.get("default"))
            case _:
                return value

    def _normalize_empty(self, value: Any) -> Any:
        """[], {}, "", null all become None for comparison."""
        if value is None:
            return None
        if isinstance(value, str | list | dict) and len(value) == 0:
            return None
        return value

    def _normalize_boolean(self, value: Any) -> bool | Any:
        """Normalize boolean-like values to actual booleans.

        "true", "True", "TRUE", 1, True -> True
        "false", "False", "FALSE", 0, False -> False
        """
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            if value.lower() in ("true", "yes", "1", "on"):
                return True
            if value.lower() in ("false", "no", "0", "off"):
                return False
        if isinstance(value, int):
            if value == 1:
                return True
            if value == 0:
                return False
        return value

    def _normalize_numeric_string(self, value: Any) -> int | float | Any:
        """Convert numeric strings: "100" -> 100, "3.14" -> 3.14."""
        if isinstance(value, bool):
            return value
        if isinstance(value, int | float):
            return value
        if isinstance(value, str):
            try:
                if "." in value:
                    return float(value)
                return int(value)
            except ValueError:
                pass
        return value

    def _normalize_case(self, value: Any) -> str | Any:
        if isinstance(value, str):
            return value.lower()
        if isinstance(value, list):
            return [v.lower() if isinstance(v, str) else v for v in value]
        return value

    def _normalize_whitespace(self, value: Any) -> str | Any:
        """Normalize whitespace in strings.

        - Collapse multiple spaces
        - Normalize line endings
        - Strip leading/trailing whitespace
        """
        if isinstance(value, str):
            value = value.replace("\r\n", "\n").replace("\r", "\n")
            lines = [" ".join(line.split()) for line in value.split("\n")]
            value = "\n".join(lines).strip()
        return value

    def _normalize_array_order(self, value: Any) -> list | Any:
        """Sort arrays so that order is irrelevant for comparison."""
        if isinstance(value, list):
            return sorted(value, key=lambda x: repr(x) if isinstance(x, dict) else str(x))
        return value

    def _normalize_default(self, value: Any, default: Any) -> Any:
        """If value is None/missing and a default is provided, return default."""
        if value is None:
            return default
        return value

    def are_equivalent(
        self,
        before: Any,
        after: Any,
        resource_type: str,
        path: str,
    ) -> tuple[bool, str | None]:
        """Check if two values are semantically equivalent.

        UNKNOWN is never equivalent to anything.

        Returns:
            Tuple of (are_equivalent, reason_if_normalized_away).
        """
        if before is UNKNOWN or after is UNKNOWN:
            return False, None
        if before == after and type(before) is type(after):
            return True, None

        normalized_before = self.normalize_value(before, resource_type, path)
        normalized_after = self.normalize_value(after, resource_type, path)

        if self._deep_equal(normalized_before, normalized_after):
            reason = self._get_equivalence_reason(resource_type, path)
            logger.debug(
                "Change normalized away",
                extra={"resource_type": resource_type, "path": path, "reason": reason},
            )
            return True, reason

        return False, None

    def _deep_equal(self, a: Any, b: Any) -> bool:
        """Deep equality that does not treat True as 1."""
        if isinstance(a, bool) or isinstance(b, bool):
            return type(a) is type(b) and a == b

        if isinstance(a, dict) and isinstance(b, dict):
            if set(a.keys()) != set(b.keys()):
                return False
            return all(self._deep_equal(a[k], b[k]) for k in a)

        if isinstance(a, list) and isinstance(b, list):
            if len(a) != len(b):
                return False
            return all(self._deep_equal(x, y) for x, y in zip(a, b, strict=True))

        if isinstance(a, dict | list) or isinstance(b, dict | list):
            return False

        return a == b

    def _get_equivalence_reason(self, resource_type: str, path: str) -> str:
        for rule in self._rules:
            if rule.matches(resource_type, path):
                return rule.reason or f"Normalized via {rule.normalization_type.value}"
        return "Values are semantically equivalent after normalization"
