# template_renderer.py

import json
import logging
import math
import re
from typing import Any, Callable, Dict, List, Mapping, Union

from jsonpath_extractor import MISSING

logger = logging.getLogger("FlowRunner.template")

__all__ = ["PLACEHOLDER_PATTERN", "render", "render_data", "render_headers", "find_unresolved", "stringify_value"]

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

Lookup = Union[Callable[[str], Any], Mapping[str, Any]]


def stringify_value(value: Any) -> str:
    """Canonical string form used for substitution and for stored variable values."""
    if isinstance(value, str):
        return value
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isfinite(value) and value == int(value):
            return str(int(value))
        return repr(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def _as_resolver(lookup: Lookup) -> Callable[[str], Any]:
    if callable(lookup):
        return lookup
    return lambda name: lookup.get(name, MISSING)


def render(template: str, lookup: Lookup) -> str:
    """
    Replace every {{name}} in template with the resolved, stringified value.
    Unresolved names are left as the literal placeholder. Never raises for
    missing variables.
    """
    if not template or "{{" not in template:
        return template
    resolve = _as_resolver(lookup)

    def replace_match(match: re.Match) -> str:
        name = match.group(1).strip()
        value = resolve(name)
        if value is MISSING:
            logger.debug(f"Template variable '{name}' not found. Leaving placeholder.")
            return match.group(0)
        return stringify_value(value)

    return PLACEHOLDER_PATTERN.sub(replace_match, template)


def render_data(data: Any, lookup: Lookup) -> Any:
    """Recursively render strings inside dicts and lists; other values pass through."""
    if isinstance(data, str):
        return render(data, lookup)
    if isinstance(data, dict):
        return {k: render_data(v, lookup) for k, v in data.items()}
    if isinstance(data, list):
        return [render_data(item, lookup) for item in data]
    return data


def find_unresolved(text: str) -> List[str]:
    """Names of placeholders still present in text."""
    if not text:
        return []
    return [m.group(1).strip() for m in PLACEHOLDER_PATTERN.finditer(text)]


def render_headers(headers: Dict[str, str], lookup: Lookup) -> Dict[str, str]:
    rendered = {}
    for key, value in headers.items():
        rendered[render(key, lookup)] = render(value, lookup)
    return rendered
