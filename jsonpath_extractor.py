# jsonpath_extractor.py

import json
import logging
import re
from typing import Any, Iterator, List, Tuple

logger = logging.getLogger("FlowRunner.jsonpath")

__all__ = ["MISSING", "extract", "extract_all", "parse_body", "parse_path"]


# --- Sentinel Object for Missing Values ---
class _MissingType:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False


MISSING = _MissingType()

# Tokens: ..name | ..* | .name | .* | [n] | [*] | ['name'] | ["name"]
_path_token_regex = re.compile(
    r"""\.\.(?P<deep>[^.\[\]]+)"""
    r"""|\.(?P<member>[^.\[\]]+)"""
    r"""|\[\s*(?P<index>-?\d+)\s*\]"""
    r"""|\[\s*(?P<wild>\*)\s*\]"""
    r"""|\[\s*'(?P<squoted>(?:[^'\\]|\\.)*)'\s*\]"""
    r"""|\[\s*"(?P<dquoted>(?:[^"\\]|\\.)*)"\s*\]"""
)


def parse_path(path: str) -> List[Tuple[str, Any]]:
    """
    Split a JSONPath expression into (kind, arg) tokens. Kinds are 'member',
    'index', 'wildcard' and 'deep'. A leading '$' is optional; a path without
    one is read relative to the root ('a.b' == '$.a.b').
    Raises ValueError on text the grammar does not cover.
    """
    expr = path.strip()
    if expr.startswith("$"):
        expr = expr[1:]
    elif expr and not expr.startswith((".", "[")):
        expr = "." + expr

    tokens: List[Tuple[str, Any]] = []
    pos = 0
    while pos < len(expr):
        match = _path_token_regex.match(expr, pos)
        if not match:
            raise ValueError(f"Invalid JSONPath '{path}' at position {pos + 1}")
        if match.group("deep") is not None:
            tokens.append(("deep", match.group("deep")))
        elif match.group("member") is not None:
            name = match.group("member")
            tokens.append(("wildcard", None) if name == "*" else ("member", name))
        elif match.group("index") is not None:
            tokens.append(("index", int(match.group("index"))))
        elif match.group("wild") is not None:
            tokens.append(("wildcard", None))
        else:
            quoted = match.group("squoted") if match.group("squoted") is not None else match.group("dquoted")
            tokens.append(("member", re.sub(r"\\(.)", r"\1", quoted)))
        pos = match.end()
    return tokens


def _children(value: Any) -> Iterator[Any]:
    if isinstance(value, dict):
        yield from value.values()
    elif isinstance(value, list):
        yield from value


def _descendants(value: Any) -> Iterator[Any]:
    """Pre-order walk: the value itself, then every nested value in document order."""
    yield value
    for child in _children(value):
        yield from _descendants(child)


def _walk(value: Any, tokens: List[Tuple[str, Any]], pos: int) -> Iterator[Any]:
    if pos == len(tokens):
        yield value
        return
    kind, arg = tokens[pos]
    if kind == "member":
        if isinstance(value, dict) and arg in value:
            yield from _walk(value[arg], tokens, pos + 1)
    elif kind == "index":
        if isinstance(value, list) and -len(value) <= arg < len(value):
            yield from _walk(value[arg], tokens, pos + 1)
    elif kind == "wildcard":
        for child in _children(value):
            yield from _walk(child, tokens, pos + 1)
    elif kind == "deep":
        for node in _descendants(value):
            if arg == "*":
                for child in _children(node):
                    yield from _walk(child, tokens, pos + 1)
            elif isinstance(node, dict) and arg in node:
                yield from _walk(node[arg], tokens, pos + 1)


def extract_all(data: Any, path: str) -> List[Any]:
    """Every value matched by path, in document order. Invalid paths match nothing."""
    if not path or not path.strip():
        return []
    try:
        tokens = parse_path(path)
    except ValueError as e:
        logger.debug(str(e))
        return []
    return list(_walk(data, tokens, 0))


def extract(data: Any, path: str) -> Any:
    """
    Evaluate a JSONPath expression against parsed JSON.
    When a path matches several values (wildcards, recursive descent) the
    first match in document order wins. Returns MISSING when nothing matches;
    a JSON null that exists is returned as None.
    """
    if not path or not path.strip():
        return MISSING
    try:
        tokens = parse_path(path)
    except ValueError as e:
        logger.debug(str(e))
        return MISSING
    for found in _walk(data, tokens, 0):
        return found
    return MISSING


def parse_body(body: Any) -> Any:
    """Parse a response body string as JSON; returns MISSING when it is not JSON."""
    if not isinstance(body, (str, bytes)):
        return body
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if not body.strip():
        return MISSING
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        return MISSING
