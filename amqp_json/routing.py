"""Routing-key templates rendered against outgoing payloads.

A template such as ``"order.{{ customer.region }}.created"`` is rendered
with the payload as context and then normalized into a valid topic key:
leading and trailing dots are dropped and runs of dots collapse into one,
so a field that renders empty leaves no gap (``"order.created"``).

Placeholders are plain key paths, not Jinja expressions: ``{{ order-id }}``
looks up the ``order-id`` key and ``{{ items.0 }}`` the first list element.
"""

import re
from collections.abc import Mapping, Sequence
from functools import lru_cache
from typing import Any, Dict

from jinja2 import ChainableUndefined, Environment, Template, TemplateSyntaxError
from pydantic import BaseModel

_DOT_RUNS = re.compile(r"^\.+|\.(?=\.)|\.+$")
_PLACEHOLDER = re.compile(r"\{\{\s*(.*?)\s*\}\}")


def _finalize(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


class _PayloadEnvironment(Environment):
    """Jinja environment where lookups only reach payload data.

    Mappings are indexed by key and lists by digit segments; anything else,
    including Python attributes and methods, is undefined.
    """

    def getitem(self, obj: Any, argument: Any) -> Any:
        if isinstance(obj, Mapping):
            try:
                return obj[argument]
            except (KeyError, TypeError):
                pass
        elif (
            isinstance(obj, Sequence)
            and not isinstance(obj, (str, bytes))
            and isinstance(argument, str)
            and argument.isascii()
            and argument.isdigit()
        ):
            index = int(argument)
            if index < len(obj):
                return obj[index]
        return self.undefined(obj=obj, name=argument)

    def getattr(self, obj: Any, attribute: str) -> Any:
        return self.getitem(obj, attribute)


_environment = _PayloadEnvironment(
    undefined=ChainableUndefined,
    finalize=_finalize,
    autoescape=False,
)
# payload names must never resolve to range, dict, lipsum and friends
_environment.globals.clear()


def normalize_routing_key(value: str) -> str:
    """Strip leading/trailing dots and collapse dot runs."""
    return _DOT_RUNS.sub("", value)


def _context(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    if isinstance(payload, Mapping):
        return {str(key): value for key, value in payload.items()}
    return {}


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _lookup(path: str) -> str:
    expression = "payload" + "".join(f"[{_quote(segment)}]" for segment in path.split("."))
    return "{{ " + expression + " }}"


def _literal(text: str) -> str:
    if "{{" in text:
        raise TemplateSyntaxError(f"Unclosed placeholder in {text!r}", lineno=1)
    if "{" in text:
        # emitted as a string constant so {% and {# stay verbatim
        return "{{ " + _quote(text) + " }}"
    return text


def to_jinja(template: str) -> str:
    """Translate a routing-key template into Jinja source of key-path lookups."""
    parts = []
    position = 0
    for match in _PLACEHOLDER.finditer(template):
        parts.append(_literal(template[position:match.start()]))
        if match.group(1):
            parts.append(_lookup(match.group(1)))
        position = match.end()
    parts.append(_literal(template[position:]))
    return "".join(parts)


@lru_cache(maxsize=256)
def _compile(template: str) -> Template:
    return _environment.from_string(to_jinja(template))


class RoutingKeyTemplate:
    """Compiled routing-key template.

    Raises:
        TemplateSyntaxError: If a ``{{`` placeholder is never closed
    """

    def __init__(self, template: str):
        self.source = template
        self._template = _compile(template)

    def render(self, payload: Any) -> str:
        """
        Render the routing key for ``payload``.

        Missing fields render as empty strings; this never raises for
        absent data.
        """
        return normalize_routing_key(self._template.render(payload=_context(payload)))

    def __repr__(self) -> str:
        return f"RoutingKeyTemplate({self.source!r})"


def render_routing_key(template: str, payload: Any) -> str:
    """Render ``template`` against ``payload`` into a normalized topic key."""
    return RoutingKeyTemplate(template).render(payload)
