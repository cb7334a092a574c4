"""Parameter Resolver - Template variable resolution.

Resolves ``{{path.to.value}}`` template variables against a node's input data.
"""

import re
from typing import Any, Dict

import orjson

from flowrunner.core.logging import get_logger
from flowrunner.services.execution.conditions import get_nested_value

logger = get_logger(__name__)

# Compiled regex for template matching
TEMPLATE_PATTERN = re.compile(r'\{\{([^}]+)\}\}')


def render_template(template: str, data: Dict[str, Any]) -> str:
    """Replace every ``{{ path }}`` with the value found at ``path`` in ``data``.

    Dicts and lists are rendered as JSON; missing paths render as empty string.
    """
    if not isinstance(template, str) or '{{' not in template:
        return template

    def replace(match: re.Match) -> str:
        path = match.group(1).strip()
        value = get_nested_value(data, path)
        if value is None:
            logger.debug("Template variable unresolved", path=path)
            return ''
        if isinstance(value, (dict, list)):
            return orjson.dumps(value).decode()
        return str(value)

    return TEMPLATE_PATTERN.sub(replace, template)


def resolve_parameters(params: Any, data: Dict[str, Any]) -> Any:
    """Recursively render templates in nested dicts and lists."""
    if isinstance(params, str):
        return render_template(params, data)
    if isinstance(params, dict):
        return {key: resolve_parameters(value, data) for key, value in params.items()}
    if isinstance(params, list):
        return [resolve_parameters(item, data) for item in params]
    return params


def find_template_paths(value: Any) -> list:
    """Collect every template path referenced anywhere in ``value``."""
    paths = []
    if isinstance(value, str):
        paths.extend(m.strip() for m in TEMPLATE_PATTERN.findall(value))
    elif isinstance(value, dict):
        for item in value.values():
            paths.extend(find_template_paths(item))
    elif isinstance(value, list):
        for item in value:
            paths.extend(find_template_paths(item))
    return paths
