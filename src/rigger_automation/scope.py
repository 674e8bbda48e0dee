from __future__ import annotations

import re
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional
from pathlib import Path

import jinja2
from jinja2.nativetypes import NativeEnvironment

from .types import UNDEFINED

_MARKERS = re.compile(r"{[{%]")
_SINGLE_EXPRESSION = re.compile(r"^\s*{{(?:(?!{{|}}).)*}}\s*$", re.DOTALL)


class TemplateError(ValueError):
    """Raised when a value cannot be rendered."""


class VariableScope:
    """Layered, read-only variables resolved innermost-first.

    Layers are given outermost first. ``child`` returns a new scope with one
    more layer on top; existing scopes are never modified.
    """

    def __init__(self, layers: Iterable[Mapping[str, Any]] = ()):
        self._layers = tuple(MappingProxyType(dict(layer)) for layer in layers)

    def child(self, layer: Mapping[str, Any]) -> "VariableScope":
        scope = VariableScope()
        scope._layers = self._layers + (MappingProxyType(dict(layer)),)
        return scope

    def lookup(self, name: str) -> Any:
        for layer in reversed(self._layers):
            if name in layer:
                return layer[name]
        return UNDEFINED

    def __contains__(self, name: object) -> bool:
        return any(name in layer for layer in self._layers)

    def names(self) -> set[str]:
        names: set[str] = set()
        for layer in self._layers:
            names.update(layer)
        return names

    def flatten(self) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for layer in self._layers:
            merged.update(layer)
        return merged


class Templar:
    """Renders ``{{ var }}`` references with Jinja2."""

    MAX_DEPTH = 10

    def __init__(self, template_dir: Optional[Path] = None):
        loader = jinja2.FileSystemLoader(str(template_dir)) if template_dir else None
        self.env = jinja2.Environment(
            undefined=jinja2.StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            loader=loader,
        )
        self.native_env = NativeEnvironment(undefined=jinja2.StrictUndefined)

    @staticmethod
    def is_template(value: Any) -> bool:
        return isinstance(value, str) and bool(_MARKERS.search(value))

    def render(self, value: Any, context: Mapping[str, Any], _depth: int = 0) -> Any:
        if _depth > self.MAX_DEPTH:
            raise TemplateError("variable references nest too deeply (recursive definition?)")
        if isinstance(value, dict):
            return {k: self.render(v, context, _depth) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.render(v, context, _depth) for v in value]
        if not self.is_template(value):
            return value
        rendered = self._render_string(value, context)
        if rendered == value:
            return rendered
        if isinstance(rendered, (dict, list, tuple)) or self.is_template(rendered):
            return self.render(rendered, context, _depth + 1)
        return rendered

    def render_text(self, text: str, context: Mapping[str, Any]) -> str:
        """Render a whole template file's text; the result is always a string."""
        try:
            return self.env.from_string(text).render(**context)
        except jinja2.TemplateError as exc:
            raise TemplateError(f"template error: {exc}") from None

    def render_file(self, path: Path, context: Mapping[str, Any]) -> str:
        return self.render_text(path.read_text(), context)

    def lookup_for(self, resolve: Callable[[str], Any], context: Mapping[str, Any]) -> Callable[[str], Any]:
        """Wrap ``resolve`` so templated values come back rendered."""

        def lookup(name: str) -> Any:
            value = resolve(name)
            if value is UNDEFINED:
                return value
            return self.render(value, context)

        return lookup

    def _render_string(self, value: str, context: Mapping[str, Any]) -> Any:
        try:
            if _SINGLE_EXPRESSION.match(value):
                # Keep lists, numbers and booleans as native values.
                result = self.native_env.from_string(value.strip()).render(**context)
                if isinstance(result, jinja2.Undefined):
                    # StrictUndefined raises UndefinedError once stringified.
                    str(result)
                return result
            return self.env.from_string(value).render(**context)
        except jinja2.TemplateError as exc:
            raise TemplateError(f"cannot render {value!r}: {exc}") from None
