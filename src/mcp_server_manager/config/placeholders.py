"""``${input:key}`` placeholder substitution and detection."""

import re
from typing import Any, List, Mapping

PLACEHOLDER_PATTERN = re.compile(r"\$\{input:([^}]+)\}")


def resolve_placeholders(value: Any, inputs: Mapping[str, Any]) -> Any:
    """Substitute ``${input:key}`` occurrences with user inputs.

    Strings are substituted, lists and plain dicts are walked recursively,
    anything else is returned unchanged. A placeholder whose key is absent
    from ``inputs`` is left in place so it can be detected later.

    Args:
        value: String, list, dict or scalar to resolve
        inputs: User-provided input values

    Returns:
        A new value with known placeholders replaced
    """
    if isinstance(value, str):

        def _replace(match: "re.Match[str]") -> str:
            key = match.group(1)
            if key in inputs:
                return str(inputs[key])
            return match.group(0)

        return PLACEHOLDER_PATTERN.sub(_replace, value)

    if isinstance(value, list):
        return [resolve_placeholders(item, inputs) for item in value]

    if type(value) is dict:
        return {key: resolve_placeholders(item, inputs) for key, item in value.items()}

    return value


def find_unresolved_placeholders(value: Any) -> List[str]:
    """Return the distinct input keys still referenced by ``value``, in order."""
    found: List[str] = []

    def _walk(item: Any) -> None:
        if isinstance(item, str):
            for key in PLACEHOLDER_PATTERN.findall(item):
                if key not in found:
                    found.append(key)
        elif isinstance(item, list):
            for child in item:
                _walk(child)
        elif type(item) is dict:
            for child in item.values():
                _walk(child)

    _walk(value)
    return found


def has_unresolved_placeholders(value: Any) -> bool:
    """Whether any string inside ``value`` still holds a placeholder."""
    return bool(find_unresolved_placeholders(value))
