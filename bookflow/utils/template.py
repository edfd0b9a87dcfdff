from __future__ import annotations

import json
import re
from typing import Any


_VAR_RE = re.compile(r"\{\{\s*(?P<key>[a-zA-Z0-9_]+)\s*\}\}")


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Substitute `{{var}}` placeholders. Lists/dicts are inserted as JSON; unknown keys become ''."""

    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group("key"), "")
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return str(value)

    return _VAR_RE.sub(_replace, template)
