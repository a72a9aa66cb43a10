"""Notification title/message templates.

Templates are plain text with `{{field_code}}` placeholders and nothing else.
jinja parses them for save-time checks; rendering substitutes known
placeholders and leaves all other text, unknown placeholders included,
exactly as written.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Tuple

from jinja2 import TemplateSyntaxError, meta, nodes
from jinja2.sandbox import ImmutableSandboxedEnvironment


logger = logging.getLogger("dynapp.templates")

TEMPLATE_ERROR_CODES = {"TEMPLATE_SYNTAX", "TEMPLATE_EXPRESSION_NOT_ALLOWED"}

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
# comments and whitespace control parse cleanly but change the output text
_NON_LITERAL_MARKERS = ("{#", "{{-", "-}}")


def _env() -> ImmutableSandboxedEnvironment:
    env = ImmutableSandboxedEnvironment(autoescape=False, keep_trailing_newline=True)
    env.globals = {}
    env.filters = {}
    env.tests = {}
    return env


_ENV = _env()


def _display(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (str, int, float)):
        return value
    if isinstance(value, dict):
        return str(value.get("name") or value.get("id") or "")
    if isinstance(value, (list, tuple)):
        return ", ".join(str(_display(item)) for item in value)
    return str(value)


def _sanitize_context(context: dict[str, Any] | None) -> dict[str, Any]:
    return {str(key): _display(val) for key, val in (context or {}).items()}


def _placeholder_only(template_text: str, ast: nodes.Template) -> bool:
    """True when the template is literal text plus bare `{{name}}` outputs."""
    if any(marker in template_text for marker in _NON_LITERAL_MARKERS):
        return False
    for node in ast.body:
        if not isinstance(node, nodes.Output):
            return False
        for child in node.nodes:
            if isinstance(child, nodes.TemplateData):
                continue
            if isinstance(child, nodes.Name) and child.ctx == "load":
                continue
            return False
    return True


def placeholders(template_text: str | None) -> set[str]:
    """Names a template refers to (used for save-time checks)."""
    if not template_text:
        return set()
    try:
        return set(meta.find_undeclared_variables(_ENV.parse(template_text)))
    except TemplateSyntaxError:
        return set(_PLACEHOLDER_RE.findall(template_text))


def validate_templates(templates: Iterable[Tuple[str, str | None]], known: Iterable[str]) -> list[dict]:
    """Save-time issues per template.

    TEMPLATE_SYNTAX and TEMPLATE_EXPRESSION_NOT_ALLOWED (anything beyond
    `{{name}}` placeholders) are errors; unknown placeholder names are
    warnings since they render as literal text.
    """
    issues: list[dict] = []
    known_set = set(known)
    for label, text in templates:
        if not text:
            continue
        try:
            ast = _ENV.parse(text)
        except TemplateSyntaxError as exc:
            issues.append(
                {
                    "code": "TEMPLATE_SYNTAX",
                    "message": f"{label}: {exc.message}",
                    "path": label,
                    "detail": {"line": exc.lineno or 1},
                }
            )
            continue
        if not _placeholder_only(text, ast):
            issues.append(
                {
                    "code": "TEMPLATE_EXPRESSION_NOT_ALLOWED",
                    "message": f"{label}: only {{{{field_code}}}} placeholders are allowed",
                    "path": label,
                    "detail": None,
                }
            )
            continue
        for name in sorted(placeholders(text) - known_set):
            issues.append(
                {
                    "code": "TEMPLATE_PLACEHOLDER_UNKNOWN",
                    "message": f"{label}: unknown placeholder {name}",
                    "path": label,
                    "detail": {"name": name},
                }
            )
    return issues


def _substitute(text: str, context: dict[str, Any]) -> str:
    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in context:
            return match.group(0)
        return str(context[name])

    return _PLACEHOLDER_RE.sub(_replace, text)


def render_template(text: str | None, context: dict[str, Any] | None) -> str:
    """Render without evaluating anything; never raises."""
    if not text:
        return ""
    values = _sanitize_context(context)
    try:
        literal = _placeholder_only(text, _ENV.parse(text))
    except TemplateSyntaxError as exc:
        logger.info("template_literal reason=syntax error=%s", exc)
        return _substitute(text, values)
    if not literal:
        logger.info("template_literal reason=expression")
    return _substitute(text, values)
