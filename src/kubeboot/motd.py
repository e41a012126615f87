"""Login banner describing the installed release."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .commands import Runner, run_command
from .templates import TemplateEngine

_RELEASE = re.compile(r"(v\d+\.\d+\.\d+)(-[a-z]+\.\d+)?.*")


@dataclass(frozen=True, slots=True)
class ReleaseInfo:
    """Version string and the source reference it was built from."""

    version: str
    gitref: str
    devel_ref: str = ""


def parse_release(version: str) -> ReleaseInfo:
    """Derive the git reference for *version*.

    Release tags (``v1.2.1``, ``v1.2.1-alpha.1``) are their own reference;
    development builds point at the build hash after the last ``+`` and keep
    the closest tag as ``devel_ref``.
    """
    gitref = _RELEASE.sub(r"\1\2", version)
    if gitref == version:
        return ReleaseInfo(version=version, gitref=gitref)
    return ReleaseInfo(version=version, gitref=version.rpartition("+")[2], devel_ref=gitref)


def kubelet_version(kubelet_bin: str, *, runner: Runner = run_command) -> str:
    """Return the second field of ``kubelet --version=true``."""
    output = runner([kubelet_bin, "--version=true"]).stdout or ""
    fields = output.split(" ")
    return fields[1].strip() if len(fields) > 1 else ""


def reset_motd(
    templates: TemplateEngine,
    destination: Path,
    *,
    kubelet_bin: str,
    licenses_path: Path,
    runner: Runner = run_command,
) -> bool:
    """Rewrite *destination* for the installed kubelet version."""
    release = parse_release(kubelet_version(kubelet_bin, runner=runner))
    return templates.render_to_path(
        "motd.j2",
        destination,
        {
            "version": release.version,
            "gitref": release.gitref,
            "devel_ref": release.devel_ref,
            "licenses_path": str(licenses_path),
        },
        mode=0o644,
    )


__all__ = ["ReleaseInfo", "kubelet_version", "parse_release", "reset_motd"]
