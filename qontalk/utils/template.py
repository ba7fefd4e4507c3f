"""Placeholder substitution for entry messages and rule responses.

Templates use ``{{name}}`` for session variables and ``{{bot.name}}`` for
bot-level (global) variables. Substitution is purely textual.
"""

import re
from typing import List, Mapping, Optional

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
GLOBAL_PREFIX = "bot."


def replace_variables(
    text: str,
    session_vars: Mapping[str, str],
    global_vars: Optional[Mapping[str, str]] = None,
) -> str:
    """Render a template with session variables, then bot variables.

    Substitution is a single pass: values inserted into the text are never
    scanned for placeholders again. Unresolved placeholders are left verbatim.

    Args:
        text: Template text
        session_vars: Per-user session variables
        global_vars: Bot-level variables, addressed as ``{{bot.<name>}}``

    Returns:
        Rendered text
    """
    global_vars = global_vars or {}

    def _resolve(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name in session_vars:
            return session_vars[name]
        if name.startswith(GLOBAL_PREFIX):
            global_name = name[len(GLOBAL_PREFIX):]
            if global_name in global_vars:
                return global_vars[global_name]
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_resolve, text)


def find_placeholders(text: str) -> List[str]:
    """Return placeholder names in order of appearance."""
    return PLACEHOLDER_PATTERN.findall(text)
