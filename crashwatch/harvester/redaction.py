"""Manifest redaction engine.

Masks the values of secret-looking keys in serialized (JSON) manifests
using an ordered list of textual pattern rules. The transformation is a
substitution over the whole text, not a structural walk, so nested or
partially malformed documents are handled without a parse.

Two shapes are recognised for every marker:

* env-var form:  ``"name": "DB_PASSWORD", "value": "p@ss"``
* direct form:   ``"db_password": "p@ss"``

Both shapes are also matched one escaping level down, as they appear in
JSON embedded in a string value (for example the
``kubectl.kubernetes.io/last-applied-configuration`` annotation):
``\\"name\\": \\"DB_PASSWORD\\", \\"value\\": \\"p@ss\\"``.

Only the string body of the value is replaced; key names, whitespace and
every other byte of the document are preserved. Redacting already
redacted text is a no-op.

Non-goal: values are never inspected, so a credential stored under an
unsuspicious key name is not detected.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache

REDACTED = "[REDACTED]"

# JSON string body, honouring backslash escapes.
_STRING_BODY = r'(?:[^"\\]|\\.)*'
# Opening quote that is not itself escaped.
_QUOTE = r'(?<!\\)"'

# The same, one escaping level down (JSON text inside a JSON string).
_ESCAPED_BODY = r'(?:[^"\\]|\\[^"\\]|\\\\(?:[^"\\]|\\.))*'
_ESCAPED_QUOTE = r'(?<!\\)\\"'
_ESCAPED_SPACE = r"(?:\s|\\[nrt])*"


class RedactionRuleError(Exception):
    """Raised when a redaction rule pattern cannot be compiled."""

    def __init__(self, rule: str, cause: re.error) -> None:
        super().__init__(f"Redaction rule '{rule}' has an invalid pattern: {cause}")
        self.rule = rule
        self.cause = cause


@dataclass(frozen=True)
class RedactionRule:
    """A named pattern with two groups: text kept before and after the value."""

    name: str
    pattern: str
    flags: int = 0
    compiled: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        try:
            compiled = re.compile(self.pattern, self.flags)
        except re.error as exc:
            raise RedactionRuleError(self.name, exc) from exc
        if compiled.groups < 2:
            raise RedactionRuleError(self.name, re.error("pattern must define a prefix and a suffix group"))
        object.__setattr__(self, "compiled", compiled)

    def apply(self, text: str) -> str:
        return self.compiled.sub(_replace_value, text)


def _replace_value(match: re.Match[str]) -> str:
    return f"{match.group(1)}{REDACTED}{match.group(2)}"


def _env_var_pattern(marker: str) -> str:
    return (
        rf'({_QUOTE}name"\s*:\s*"{_STRING_BODY}{marker}{_STRING_BODY}"\s*,\s*"value"\s*:\s*")'
        rf"{_STRING_BODY}"
        r'(")'
    )


def _direct_key_pattern(marker: str) -> str:
    return rf'({_QUOTE}[^"\\]*{marker}[^"\\]*"\s*:\s*"){_STRING_BODY}(")'


def _escaped_env_var_pattern(marker: str) -> str:
    q, ws = _ESCAPED_QUOTE, _ESCAPED_SPACE
    return (
        rf'({q}name\\"{ws}:{ws}\\"{_ESCAPED_BODY}{marker}{_ESCAPED_BODY}\\"{ws},{ws}\\"value\\"{ws}:{ws}\\")'
        rf"{_ESCAPED_BODY}"
        r'(\\")'
    )


def _escaped_direct_key_pattern(marker: str) -> str:
    q, ws = _ESCAPED_QUOTE, _ESCAPED_SPACE
    return rf'({q}[^"\\]*{marker}[^"\\]*\\"{ws}:{ws}\\"){_ESCAPED_BODY}(\\")'


_MARKERS: tuple[tuple[str, str, int], ...] = (
    ("secret", "_SECRET", 0),
    ("token", "_TOKEN", 0),
    ("key", "_KEY", 0),
    ("password", "PASSWORD", re.IGNORECASE),
)

DEFAULT_RULES: tuple[tuple[str, str, int], ...] = (
    *((f"env_{name}", _env_var_pattern(marker), flags) for name, marker, flags in _MARKERS),
    *((f"key_{name}", _direct_key_pattern(marker), flags) for name, marker, flags in _MARKERS),
    *((f"escaped_env_{name}", _escaped_env_var_pattern(marker), flags) for name, marker, flags in _MARKERS),
    *((f"escaped_key_{name}", _escaped_direct_key_pattern(marker), flags) for name, marker, flags in _MARKERS),
)


class RedactionEngine:
    """Applies redaction rules in order over a serialized manifest.

    Args:
        rules: ``(name, pattern, flags)`` triples. Each pattern must capture
               the text before the value as group 1 and the closing quote
               as group 2.

    Raises:
        RedactionRuleError: if any pattern is malformed. Construction
            happens once at startup, so this is fatal to initialisation.
    """

    def __init__(self, rules: tuple[tuple[str, str, int], ...] = DEFAULT_RULES) -> None:
        self._rules = [RedactionRule(name=name, pattern=pattern, flags=flags) for name, pattern, flags in rules]

    @property
    def rule_names(self) -> list[str]:
        return [rule.name for rule in self._rules]

    def redact(self, manifest: str) -> str:
        """Return *manifest* with every matching secret value masked."""
        for rule in self._rules:
            manifest = rule.apply(manifest)
        return manifest


@lru_cache(maxsize=1)
def default_engine() -> RedactionEngine:
    """Shared engine built from DEFAULT_RULES."""
    return RedactionEngine()


def redact(manifest: str) -> str:
    """Redact *manifest* with the default rules."""
    return default_engine().redact(manifest)
