"""
JSON path mini-language used by the json-api discovery method.

Exactly three shapes are understood:

- ``$root``: the document itself is the version array.
- ``field``: a named top-level array.
- ``arr[].field``: an array of objects (``arr`` may be ``$root``) from which
  ``field`` is plucked.

Anything else is rejected when the path is parsed, so a misconfigured
descriptor fails at load time instead of silently discovering nothing.
"""

import re
from dataclasses import dataclass
from typing import Any, List, Optional

from buildresolver.exceptions import UnsupportedJsonPathError

ROOT_TOKEN = "$root"

KIND_ROOT = "root"
KIND_FIELD = "field"
KIND_ARRAY_FIELD = "array_field"

# Placeholders are substituted before parsing, so braces never reach here
_NAME = r"[A-Za-z0-9_\-]+"
_FIELD_RE = re.compile(rf"^{_NAME}$")
_ARRAY_FIELD_RE = re.compile(rf"^(\$root|{_NAME})\[\]\.({_NAME})$")


@dataclass(frozen=True)
class JsonPath:
    """A validated JSON path."""

    kind: str
    array_name: Optional[str] = None
    field_name: Optional[str] = None

    def extract_versions(self, document: Any) -> List[int]:
        """
        Extract version numbers from a decoded JSON document.

        Integers and numeric strings are accepted; anything else is skipped.
        A document whose shape does not match the path yields an empty list.

        Returns:
            List[int]: Distinct non-negative versions sorted descending.
        """
        if self.kind == KIND_ROOT:
            values = document if isinstance(document, list) else []
        elif self.kind == KIND_FIELD:
            values = _named_array(document, self.array_name)
        else:
            container = (
                document
                if self.array_name == ROOT_TOKEN
                else _named_array(document, self.array_name)
            )
            values = [
                item.get(self.field_name)
                for item in (container if isinstance(container, list) else [])
                if isinstance(item, dict)
            ]

        versions = {v for v in (_coerce_version(value) for value in values) if v is not None}
        return sorted(versions, reverse=True)


def _named_array(document: Any, name: Optional[str]) -> List[Any]:
    if not isinstance(document, dict):
        return []
    value = document.get(name)
    return value if isinstance(value, list) else []


def _coerce_version(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def parse_json_path(path: Optional[str]) -> JsonPath:
    """
    Parse a path expression into a JsonPath.

    Parameters:
        path (Optional[str]): The expression from the descriptor.

    Returns:
        JsonPath: The validated path.

    Raises:
        UnsupportedJsonPathError: If the expression is empty or uses any other syntax.
    """
    expression = (path or "").strip()
    if expression == ROOT_TOKEN:
        return JsonPath(kind=KIND_ROOT)
    if _FIELD_RE.match(expression):
        return JsonPath(kind=KIND_FIELD, array_name=expression)
    match = _ARRAY_FIELD_RE.match(expression)
    if match:
        return JsonPath(
            kind=KIND_ARRAY_FIELD,
            array_name=match.group(1),
            field_name=match.group(2),
        )
    raise UnsupportedJsonPathError(
        f"Unsupported JSON path {path!r}",
        field="jsonPath",
        value=path,
        details="expected '$root', 'field' or 'array[].field'",
    )
