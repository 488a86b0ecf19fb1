"""Resolution of symbolic environment variable references.

OAuth provider configs may name a secret indirectly as
``process.env.NAME``; the value is read from the environment at use time.
"""

import os
import re
from typing import Any, Mapping, Optional

ENV_REFERENCE = re.compile(r"^process\.env\.([A-Z_][A-Z0-9_]*)$")


def resolve_environment_variables(
    obj: Any,
    environ: Optional[Mapping[str, str]] = None
) -> Any:
    """
    Recursively resolve ``process.env.NAME`` references.

    Unset or empty variables resolve to ``None``. Keys whose value resolves
    to ``None`` are dropped from mappings; list entries become ``None``.

    Args:
        obj: A string, mapping, sequence or scalar
        environ: Environment to read from (defaults to ``os.environ``)

    Returns:
        A resolved copy of ``obj``
    """
    environ = os.environ if environ is None else environ

    if isinstance(obj, str):
        match = ENV_REFERENCE.match(obj)
        if match:
            return environ.get(match.group(1)) or None
        return obj

    if isinstance(obj, Mapping):
        resolved = {}
        for key, value in obj.items():
            value = resolve_environment_variables(value, environ)
            if value is not None:
                resolved[key] = value
        return resolved

    if isinstance(obj, (list, tuple)):
        return [resolve_environment_variables(item, environ) for item in obj]

    return obj
