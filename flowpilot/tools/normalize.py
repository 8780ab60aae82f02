"""Canonicalization of names and expressions written by the model."""

import re

_BRACKET_REFERENCE = re.compile(r'\["([^"]+)"\]')
_WHITESPACE = re.compile(r"\s+")


def normalize_node_name(name: str) -> str:
    """Node names are referenced as identifiers, so spaces become underscores."""
    if not name:
        return name
    return _WHITESPACE.sub("_", name)


def normalize_condition(expr: str) -> str:
    """Rewrite a JS-flavoured expression into expr-lang syntax.

    ``["Get User"].body.id === 1`` becomes ``Get_User.body.id == 1``.
    """
    if not expr:
        return expr
    normalized = _BRACKET_REFERENCE.sub(
        lambda m: normalize_node_name(m.group(1)), expr
    )
    return normalized.replace("===", "==").replace("!==", "!=")


def normalize_js_references(code: str) -> str:
    """``ctx["Get User"]`` becomes ``ctx["Get_User"]``."""
    if not code:
        return code
    return _BRACKET_REFERENCE.sub(
        lambda m: '["%s"]' % normalize_node_name(m.group(1)), code
    )


def wrap_js_code(code: str) -> str:
    """Wrap a function body into the module shape the JS runner expects."""
    return "export default function(ctx) {\n  %s\n}" % normalize_js_references(code)
