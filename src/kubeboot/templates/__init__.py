"""Jinja2 rendering for the files kubeboot owns outright.

Kubeconfigs, webhook configs, the cloud-provider config, ``/etc/default``
flag files and the login banner are generated from the templates shipped in
this package. An override directory may shadow any of them by relative name.
Manifests provided by the node image are *not* rendered here; they use the
token substitution in :mod:`kubeboot.manifests`.
"""
from __future__ import annotations

import os
import tempfile
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
    """Render built-in (or overridden) Jinja2 templates."""

    def __init__(self, environment: Environment) -> None:
        self._environment = environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates from *override_dir* when present."""
        loaders: list[BaseLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("kubeboot", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        return cls(environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        template = self._environment.get_template(template_name)
        return template.render(**context)

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render into *destination*; return False when the file was already current."""
        content = self.render_to_string(template_name, context)
        return write_if_changed(destination, content, mode=mode)


def write_if_changed(destination: Path, content: str, *, mode: int = 0o644) -> bool:
    """Atomically replace *destination* with *content* unless it already matches."""
    if destination.exists():
        try:
            current = destination.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            current = None
        if current == content:
            if (destination.stat().st_mode & 0o777) != mode:
                destination.chmod(mode)
            return False
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", dir=destination.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        tmp_path.chmod(mode)
        os.replace(tmp_path, destination)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return True


__all__ = ["TemplateEngine", "write_if_changed"]
