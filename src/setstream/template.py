"""Template variable substitution for settings files."""

import os
import re
from datetime import date, datetime, timedelta
from typing import Any

from .errors import ConfigurationError

_PATTERN = re.compile(r"\$\{([^}]+)\}")


class TemplateResolver:
    """Resolve ``${...}`` placeholders in values loaded from YAML."""

    def __init__(self, **custom_vars):
        """Initialize template resolver with optional custom variables.

        Args:
            **custom_vars: Extra variables (e.g., LAKE_ROOT="/data/lake")
        """
        self.custom_vars = custom_vars

    def resolve(self, value: Any) -> Any:
        """Resolve template variables in any value (str, dict, list, etc.).

        Args:
            value: Value to resolve

        Returns:
            Value with variables substituted
        """
        if isinstance(value, str):
            return self._resolve_string(value)
        elif isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [self.resolve(item) for item in value]
        else:
            return value

    def _resolve_string(self, text: str) -> str:
        """Resolve variables in a string.

        Supports:
        - ${TODAY} / ${YESTERDAY} - ISO dates
        - ${YEAR} - Current year
        - ${TIMESTAMP} - Current timestamp (YYYY-MM-DD HH:MM:SS)
        - ${ENV:VAR_NAME} - Environment variable (required)
        - ${ENV:VAR_NAME:-fallback} - Environment variable with fallback
        - ${NAME} - Custom variable passed to the resolver
        """
        return _PATTERN.sub(lambda m: self._get_variable_value(m.group(1).strip()), text)

    def _get_variable_value(self, var_name: str) -> str:
        today = date.today()

        if var_name == "TODAY":
            return today.isoformat()
        elif var_name == "YESTERDAY":
            return (today - timedelta(days=1)).isoformat()
        elif var_name == "YEAR":
            return str(today.year)
        elif var_name == "TIMESTAMP":
            return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        elif var_name.startswith("ENV:"):
            env_spec = var_name.split(":", 1)[1]
            env_var, _, fallback = env_spec.partition(":-")
            value = os.getenv(env_var)
            if value is not None:
                return value
            if ":-" in env_spec:
                return fallback
            raise ConfigurationError(f"Environment variable not found: {env_var}")

        elif var_name in self.custom_vars:
            return str(self.custom_vars[var_name])

        raise ConfigurationError(f"Unknown template variable: {var_name}")


def resolve_config(config: dict[str, Any], **custom_vars) -> dict[str, Any]:
    """Resolve all variables in a settings dict.

    Example:
        >>> resolve_config({"storage": {"lake_path": "${ENV:LAKE:-data/lake}"}})
        {'storage': {'lake_path': 'data/lake'}}
    """
    return TemplateResolver(**custom_vars).resolve(config)
