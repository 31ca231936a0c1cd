"""Utility functions used throughout the project."""
import json
import re
from typing import Any

_IRREGULAR_PLURALS = {
    "child": "children",
    "person": "people",
    "man": "men",
    "woman": "women",
}


def pluralise(word: str) -> str:
    """Get the plural form of an english noun.

    :param word: Singular noun, possibly snake_case.
    :return: The plural noun, only the last segment is changed.
    """
    head, _, last = word.rpartition("_")
    prefix = f"{head}_" if head else ""
    if last in _IRREGULAR_PLURALS:
        return prefix + _IRREGULAR_PLURALS[last]
    if re.search(r"[^aeiou]y$", last):
        return f"{prefix}{last[:-1]}ies"
    if re.search(r"(s|x|z|ch|sh)$", last):
        return f"{prefix}{last}es"
    return f"{prefix}{last}s"


def lcfirst(name: str) -> str:
    """Lower case the first character of a name."""
    return name[:1].lower() + name[1:]


def to_array(value: Any) -> list[Any]:
    """Wrap a non-list value in a list."""
    return value if isinstance(value, list) else [value]


def encode_key(values: list[Any]) -> str:
    """Get the identity map key for a list of unique key values."""
    return json.dumps(values, default=str)
