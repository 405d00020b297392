"""Jinja2 template engine for web-server fragments.

Templates ship inside this package (``caddy/site.j2``, ``nginx/site.conf.j2``)
and may be shadowed by files of the same relative name in the configured
override directory.
"""
from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    BaseLoader,
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
)


class TemplateEngine:
    """Render packaged templates with optional filesystem overrides."""

    def __init__(self, loader: BaseLoader) -> None:
        """Create the Jinja environment around *loader*."""
        self._env = Environment(
            loader=loader,
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders: list[BaseLoader] = []
        if override_dir is not None and Path(override_dir).expanduser().is_dir():
            loaders.append(FileSystemLoader(str(Path(override_dir).expanduser())))
        loaders.append(PackageLoader("servermark", "templates"))
        return cls(ChoiceLoader(loaders))

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        template = self._env.get_template(template_name)
        return template.render(**dict(context))


__all__ = ["TemplateEngine"]
