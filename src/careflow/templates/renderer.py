"""Message templates with {variable} merge placeholders."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any


class TemplateRenderer:
    """Substitute ``{variable}`` placeholders in a message body.

    Example::

        r = TemplateRenderer("Hi {first_name}, see you at {appointment_time}")
        text = r.render({"first_name": "Ana"})
        # "Hi Ana, see you at {appointment_time}"

    Unlike a plain :meth:`str.format`, unknown placeholders are left in the
    output verbatim so a missing merge field is visible in the delivered text
    instead of silently blanked. Literal braces that do not wrap an identifier
    (JSON snippets, ``{ }``) are untouched.
    """

    _VAR_PATTERN = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

    def __init__(self, template: str, **defaults: Any) -> None:
        self._template = template
        self._defaults: dict[str, Any] = dict(defaults)

    @property
    def template(self) -> str:
        """Return the raw template string."""
        return self._template

    @property
    def variables(self) -> set[str]:
        """Return set of variable names found in the template."""
        return set(self._VAR_PATTERN.findall(self._template))

    def missing(self, variables: Mapping[str, Any] | None = None) -> set[str]:
        """Return placeholder names that *variables* (plus defaults) cannot fill."""
        merged = {**self._defaults, **(variables or {})}
        return {name for name in self.variables if merged.get(name) is None}

    def render(self, variables: Mapping[str, Any] | None = None, **kwargs: Any) -> str:
        """Render the template.

        Values are converted with :func:`str`. ``None`` values count as
        unresolved and keep their placeholder.
        """
        merged = {**self._defaults, **(variables or {}), **kwargs}

        def _replace(match: re.Match[str]) -> str:
            value = merged.get(match.group(1))
            if value is None:
                return match.group(0)
            return str(value)

        return self._VAR_PATTERN.sub(_replace, self._template)

    def partial(self, **kwargs: Any) -> TemplateRenderer:
        """Return a new renderer with some variables pre-filled as defaults."""
        return TemplateRenderer(self._template, **{**self._defaults, **kwargs})

    def __repr__(self) -> str:
        return f"TemplateRenderer({self._template!r})"
