"""
Utilities for string interpolation using environment variables.
"""
import re
from typing import Dict, List, Optional


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in catalog text.
    Supports ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value},
    ${VAR:?message} and $$ as an escaped dollar sign.
    """
    # Group 1: escaped $$
    # Group 2: VAR name
    # Group 3: modifier (:-, -, :+, :?)
    # Group 4: default / alternative / error message
    PATTERN = re.compile(r'(\$\$)|\$\{([A-Za-z_][A-Za-z0-9_]*)(?:(:-|-|:\+|:\?)([^}]*))?\}')

    @classmethod
    def interpolate(cls,
                    template: str,
                    context: Dict[str, str],
                    missing: Optional[List[str]] = None) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :param missing: When given, names of unset plain ${VAR} references are
            appended to it and they resolve to an empty string. Otherwise they raise.
        :return: The interpolated string.
        :raises KeyError: If a variable is not found and no default is provided,
            or a ${VAR:?message} variable is unset or empty.
        """
        def replace(match):
            if match.group(1):
                return '$'

            var_name = match.group(2)
            modifier = match.group(3)
            alt_value = match.group(4) or ''
            value = context.get(var_name)

            if modifier == ':-':
                return value if value else alt_value
            if modifier == '-':
                return value if value is not None else alt_value
            if modifier == ':+':
                return alt_value if value else ''
            if modifier == ':?':
                if not value:
                    raise KeyError(alt_value or f"Variable {var_name} is required")
                return value

            if value is not None:
                return value
            if missing is not None:
                missing.append(var_name)
                return ''
            raise KeyError(f"Variable {var_name} not found in context")

        return cls.PATTERN.sub(replace, template)
