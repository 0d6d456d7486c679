"""
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# ${VAR}, ${VAR:-default}, ${VAR:+value}; $$ escapes a literal dollar
_PATTERN = re.compile(r'\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::(-|\+)([^}]*))?\}')

# A whole value that only references a variable or a secret
_REFERENCE = re.compile(r'^\$\{(?:secret:)?([A-Za-z_][A-Za-z0-9_.-]*)\}$')


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports ${VAR}, ${VAR:-default} and ${VAR:+value}.
    """
    @staticmethod
    def interpolate(template: str, context: Dict[str, str], strict: bool = False) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :param strict: Raise on unset variables instead of substituting an empty string.
        :return: The interpolated string.
        :raises KeyError: If strict and a variable is unset with no default.
        """
        def replace(match):
            if match.group(0) == "$$":
                return "$"
            var_name, modifier, alt_value = match.group(1), match.group(2), match.group(3)
            value = context.get(var_name)

            if modifier == '-':
                return value if value else alt_value
            if modifier == '+':
                return alt_value if value else ''
            if value is not None:
                return value
            if strict:
                raise KeyError(f"Variable {var_name} not found in context")
            logger.warning("Variable %s is not set, defaulting to a blank string", var_name)
            return ''

        return _PATTERN.sub(replace, template)

    @staticmethod
    def reference_name(value: str) -> Optional[str]:
        """
        Returns the referenced name when a value is exactly ``${NAME}`` or ``${secret:NAME}``.
        """
        match = _REFERENCE.match(value.strip())
        return match.group(1) if match else None
