"""Token substitution for static workload manifests.

Manifest templates shipped on the node image were written for a Salt/Jinja
pipeline and carry two kinds of placeholders:

* simple tokens, ``{{ name }}`` (whitespace inside the braces is optional);
* keyed tokens, ``{{ pillar['key'] }}``.

They also contain Salt residue: whole lines opening with ``{#`` / ``{%``, shell
style ``#`` comment lines and, occasionally, inline ``{% ... %}`` fragments.

Rendering is a single pass over the template: residue is removed first, then
every placeholder is looked up in a :class:`TokenTable` and replaced by its
bound value. Because substitution happens once per placeholder occurrence, a
value that itself looks like a placeholder is never re-expanded, and a token
can only carry one value per render. Placeholders with no binding are left
verbatim and reported so callers can log them.
"""
from __future__ import annotations

import logging
import re
import shutil
from collections import Counter
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .templates import write_if_changed

LOGGER = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(
    r"\{\{\s*(?:"
    r"pillar\[\s*(?P<quote>['\"])(?P<pillar>[^'\"]+)(?P=quote)\s*\]"
    r"|(?P<name>[A-Za-z_][A-Za-z0-9_-]*)"
    r")\s*\}\}"
)
_RESIDUE_LINE = re.compile(r"^[ \t]*(?:\{[#%]|#)")
_INLINE_STATEMENT = re.compile(r"\{%.*?%\}")


class ManifestError(RuntimeError):
    """Raised when a manifest cannot be rendered or installed."""


class DuplicateTokenError(ManifestError):
    """Raised when a token is bound to two different values."""


class TokenKind(str, Enum):
    """Placeholder syntax a token is written in."""

    SIMPLE = "simple"
    PILLAR = "pillar"


@dataclass(frozen=True, slots=True)
class Token:
    """A placeholder identity, independent of its whitespace in the template."""

    kind: TokenKind
    name: str

    @classmethod
    def simple(cls, name: str) -> Token:
        """Return the ``{{ name }}`` token."""
        return cls(TokenKind.SIMPLE, name)

    @classmethod
    def pillar(cls, key: str) -> Token:
        """Return the ``{{ pillar['key'] }}`` token."""
        return cls(TokenKind.PILLAR, key)

    @property
    def placeholder(self) -> str:
        """Canonical spelling of the placeholder."""
        if self.kind is TokenKind.PILLAR:
            return f"{{{{ pillar['{self.name}'] }}}}"
        return f"{{{{ {self.name} }}}}"

    def __str__(self) -> str:
        return self.placeholder


class TokenTable:
    """Bindings from tokens to their rendered values.

    A token may be bound more than once only with the same value; rebinding to
    a different value raises :class:`DuplicateTokenError`.
    """

    def __init__(
        self,
        values: Mapping[str, str] | None = None,
        *,
        pillar: Mapping[str, str] | None = None,
    ) -> None:
        self._values: dict[Token, str] = {}
        for name, value in (values or {}).items():
            self.set(name, value)
        for key, value in (pillar or {}).items():
            self.set_pillar(key, value)

    def bind(self, token: Token, value: str) -> TokenTable:
        """Bind *token* to *value*."""
        text = str(value)
        existing = self._values.get(token)
        if existing is not None and existing != text:
            raise DuplicateTokenError(
                f"Token {token} is already bound to {existing!r}; refusing {text!r}."
            )
        self._values[token] = text
        return self

    def set(self, name: str, value: str) -> TokenTable:
        """Bind the simple token *name*."""
        return self.bind(Token.simple(name), value)

    def set_pillar(self, key: str, value: str) -> TokenTable:
        """Bind the keyed token ``pillar['key']``."""
        return self.bind(Token.pillar(key), value)

    def disable(self, *names: str) -> TokenTable:
        """Bind each simple token in *names* to the empty string."""
        for name in names:
            self.set(name, "")
        return self

    def lookup(self, token: Token) -> str | None:
        """Return the value bound to *token*, or None."""
        return self._values.get(token)

    def __contains__(self, token: object) -> bool:
        return token in self._values

    def __iter__(self) -> Iterator[Token]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def as_dict(self) -> dict[str, str]:
        """Return ``{placeholder: value}`` for logging and debugging."""
        return {token.placeholder: value for token, value in self._values.items()}


@dataclass(frozen=True, slots=True)
class RenderedManifest:
    """Text produced by a render plus substitution bookkeeping."""

    text: str
    substitutions: Mapping[str, int]
    unresolved: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class InstalledManifest:
    """Outcome of placing a manifest on disk."""

    source: Path
    destination: Path
    changed: bool
    unresolved: tuple[str, ...] = ()


def parse_token(match: re.Match[str]) -> Token:
    """Return the :class:`Token` matched by the placeholder pattern."""
    pillar_key = match.group("pillar")
    if pillar_key is not None:
        return Token.pillar(pillar_key)
    return Token.simple(match.group("name"))


def find_tokens(text: str) -> list[Token]:
    """Return the distinct tokens referenced in *text*, in first-seen order."""
    seen: dict[Token, None] = {}
    for match in _TOKEN_PATTERN.finditer(text):
        seen.setdefault(parse_token(match), None)
    return list(seen)


def strip_residue(text: str) -> str:
    """Remove Salt directive/comment lines and inline ``{% %}`` fragments."""
    kept = [line for line in text.splitlines(keepends=True) if not _RESIDUE_LINE.match(line)]
    return _INLINE_STATEMENT.sub("", "".join(kept))


class ManifestTemplater:
    """Render manifest templates and place the results for the supervisor."""

    def render_text(
        self,
        text: str,
        table: TokenTable,
        *,
        rewrites: Mapping[str, str] | None = None,
    ) -> RenderedManifest:
        """Render template *text* against *table*.

        *rewrites* maps literal strings of the template to replacements; they
        are applied to the template before tokens are expanded.
        """
        body = strip_residue(text)
        for old, new in (rewrites or {}).items():
            body = body.replace(old, new)

        counts: Counter[str] = Counter()
        unresolved: dict[str, None] = {}

        def _substitute(match: re.Match[str]) -> str:
            token = parse_token(match)
            value = table.lookup(token)
            if value is None:
                unresolved.setdefault(match.group(0), None)
                return match.group(0)
            counts[token.placeholder] += 1
            return value

        rendered = _TOKEN_PATTERN.sub(_substitute, body)
        return RenderedManifest(
            text=rendered,
            substitutions=dict(counts),
            unresolved=tuple(unresolved),
        )

    def render_file(
        self,
        template: Path,
        table: TokenTable,
        *,
        rewrites: Mapping[str, str] | None = None,
    ) -> RenderedManifest:
        """Render the template stored at *template*."""
        try:
            text = template.read_text(encoding="utf-8")
        except OSError as exc:
            raise ManifestError(f"Cannot read manifest template {template}: {exc}") from exc
        return self.render_text(text, table, rewrites=rewrites)

    def install(
        self,
        template: Path,
        destination_dir: Path,
        table: TokenTable,
        *,
        name: str | None = None,
        rewrites: Mapping[str, str] | None = None,
        mode: int = 0o644,
    ) -> InstalledManifest:
        """Render *template* and place it in *destination_dir*.

        The template is left untouched; the rendered text is written to a
        temporary file next to the destination and moved into place, so the
        supervisor never observes a partially written manifest.
        """
        rendered = self.render_file(template, table, rewrites=rewrites)
        destination = destination_dir / (name or template.name)
        changed = self._write(destination, rendered.text, mode)
        self._report(template, rendered)
        return InstalledManifest(
            source=template,
            destination=destination,
            changed=changed,
            unresolved=rendered.unresolved,
        )

    def render_in_place(
        self,
        path: Path,
        table: TokenTable,
        *,
        mode: int = 0o644,
    ) -> InstalledManifest:
        """Render a manifest that has already been copied to its final location."""
        rendered = self.render_file(path, table)
        changed = self._write(path, rendered.text, mode)
        self._report(path, rendered)
        return InstalledManifest(
            source=path,
            destination=path,
            changed=changed,
            unresolved=rendered.unresolved,
        )

    def copy(
        self,
        source: Path,
        destination_dir: Path,
        *,
        name: str | None = None,
        mode: int = 0o644,
    ) -> InstalledManifest:
        """Place *source* verbatim in *destination_dir*."""
        if not source.is_file():
            raise ManifestError(f"Manifest {source} does not exist.")
        destination = destination_dir / (name or source.name)
        destination_dir.mkdir(parents=True, exist_ok=True)
        changed = not destination.exists() or destination.read_bytes() != source.read_bytes()
        if changed:
            shutil.copyfile(source, destination)
        destination.chmod(mode)
        return InstalledManifest(source=source, destination=destination, changed=changed)

    def _write(self, destination: Path, text: str, mode: int) -> bool:
        try:
            return write_if_changed(destination, text, mode=mode)
        except OSError as exc:
            raise ManifestError(f"Cannot write manifest {destination}: {exc}") from exc

    def _report(self, source: Path, rendered: RenderedManifest) -> None:
        if rendered.unresolved:
            LOGGER.warning(
                "%s: placeholders left unresolved: %s",
                source.name,
                ", ".join(rendered.unresolved),
            )


__all__ = [
    "DuplicateTokenError",
    "InstalledManifest",
    "ManifestError",
    "ManifestTemplater",
    "RenderedManifest",
    "Token",
    "TokenKind",
    "TokenTable",
    "find_tokens",
    "parse_token",
    "strip_residue",
]
