# template_binder.py

import base64
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import quote_plus, urlparse

from multidict import CIMultiDict

from requrse_errors import TemplateRenderError, TemplateSyntaxError

logger = logging.getLogger("requrse.templates")

__all__ = [
    "sanitize_key",
    "template_key",
    "CompiledTemplate",
    "compile_template",
    "TemplateCache",
    "BoundRequest",
    "WS_SCHEMES",
    "TemplateBinder",
]

# ---------------------------
# Template keys
# ---------------------------
_sanitize_regex = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_key(value: str) -> str:
    """Lower-case and strip everything outside [a-z0-9_-]."""
    return _sanitize_regex.sub("", value.lower())


def template_key(method: str, url: str, role: str) -> str:
    """Deterministic cache key for one templated field of a request definition."""
    return f"{sanitize_key(f'{method}_{url}')}_{role}"


# ---------------------------
# Template language
# ---------------------------
# Actions look like {{ .Path.to[0].value | filter }}. {{- and -}} trim adjacent whitespace.
_action_regex = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_token_regex = re.compile(
    r'\s*(?:(?P<string>"(?:[^"\\]|\\.)*")|(?P<pipe>\|)|(?P<number>-?\d+)|(?P<path>\.[^\s|]*)|(?P<ident>[A-Za-z_]\w*))'
)
_path_segment_regex = re.compile(r"\.([A-Za-z_]\w*)|\[(\d+)\]")

_MISSING = object()


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


_FILTERS = {
    "urlquery": lambda v: quote_plus(_to_text(v)),
    "json": lambda v: json.dumps(v, separators=(",", ":")),
    "lower": lambda v: _to_text(v).lower(),
    "upper": lambda v: _to_text(v).upper(),
    "trim": lambda v: _to_text(v).strip(),
    "base64": lambda v: base64.b64encode(_to_text(v).encode("utf-8")).decode("ascii"),
}

PathSegments = Tuple[Tuple[str, Union[str, int]], ...]


def _parse_path(path: str, template_name: str) -> PathSegments:
    if path == ".":
        return ()
    segments = []
    position = 0
    for match in _path_segment_regex.finditer(path):
        if match.start() != position:
            break
        key, index = match.groups()
        segments.append(("key", key) if key is not None else ("index", int(index)))
        position = match.end()
    if position != len(path) or not segments or segments[0][0] != "key":
        raise TemplateSyntaxError(f"malformed field reference '{path}'", template_name)
    return tuple(segments)


def _step(current: Any, segment: Tuple[str, Union[str, int]], path: str, template_name: str) -> Any:
    kind, name = segment
    if kind == "key":
        if not isinstance(current, dict):
            raise TemplateRenderError(
                f"cannot access field '{name}' of {type(current).__name__} in '{path}'", template_name
            )
        value = current.get(name, _MISSING)
        if value is _MISSING:
            raise TemplateRenderError(f"'{path}' refers to missing field '{name}'", template_name)
        return value

    if not isinstance(current, list):
        raise TemplateRenderError(
            f"cannot index {type(current).__name__} with [{name}] in '{path}'", template_name
        )
    if not 0 <= name < len(current):
        raise TemplateRenderError(
            f"index {name} out of range (length {len(current)}) in '{path}'", template_name
        )
    return current[name]


@dataclass(frozen=True)
class _Operand:
    kind: str  # "path" or "literal"
    value: Any
    source: str

    def resolve(self, view: Dict[str, Any], template_name: str) -> Any:
        if self.kind == "literal":
            return self.value
        current: Any = view
        for segment in self.value:
            if current is None:
                # Nothing to traverse yet (e.g. no previous response): renders empty
                return None
            current = _step(current, segment, self.source, template_name)
        return current


@dataclass(frozen=True)
class _Action:
    operand: _Operand
    index_args: Tuple[_Operand, ...] = ()
    is_index: bool = False
    filters: Tuple[str, ...] = ()

    def evaluate(self, view: Dict[str, Any], template_name: str) -> str:
        value = self.operand.resolve(view, template_name)
        if self.is_index:
            for arg in self.index_args:
                key = arg.resolve(view, template_name)
                if value is None:
                    break
                if isinstance(value, dict):
                    value = value.get(key if isinstance(key, str) else _to_text(key))
                elif isinstance(value, list):
                    if not isinstance(key, int) or isinstance(key, bool):
                        raise TemplateRenderError(f"index of list must be an integer, got {key!r}", template_name)
                    if not 0 <= key < len(value):
                        raise TemplateRenderError(
                            f"index {key} out of range (length {len(value)})", template_name
                        )
                    value = value[key]
                else:
                    raise TemplateRenderError(f"cannot index {type(value).__name__}", template_name)
        for name in self.filters:
            value = _FILTERS[name](value)
        return _to_text(value)


def _tokenize(action: str, template_name: str) -> List[Tuple[str, str]]:
    tokens = []
    position = 0
    text = action.rstrip()
    while position < len(text):
        match = _token_regex.match(text, position)
        if not match or match.end() == position:
            raise TemplateSyntaxError(f"unexpected input '{text[position:].strip()}' in action '{{{{{action}}}}}'", template_name)
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


def _operand(token: Tuple[str, str], template_name: str) -> _Operand:
    kind, text = token
    if kind == "path":
        return _Operand("path", _parse_path(text, template_name), text)
    if kind == "string":
        return _Operand("literal", json.loads(text), text)
    if kind == "number":
        return _Operand("literal", int(text), text)
    raise TemplateSyntaxError(f"expected a field reference or literal, got '{text}'", template_name)


def _parse_action(action: str, template_name: str) -> Optional[_Action]:
    stripped = action.strip()
    if stripped.startswith("/*") and stripped.endswith("*/"):
        return None
    if not stripped:
        raise TemplateSyntaxError("empty action '{{}}'", template_name)

    commands: List[List[Tuple[str, str]]] = [[]]
    for token in _tokenize(stripped, template_name):
        if token[0] == "pipe":
            commands.append([])
        else:
            commands[-1].append(token)
    if any(not command for command in commands):
        raise TemplateSyntaxError(f"empty command in pipeline '{stripped}'", template_name)

    head, filters = commands[0], commands[1:]
    filter_names = []
    for command in filters:
        if len(command) != 1 or command[0][0] != "ident" or command[0][1] not in _FILTERS:
            raise TemplateSyntaxError(
                f"unknown filter '{' '.join(t[1] for t in command)}' (known: {', '.join(sorted(_FILTERS))})",
                template_name,
            )
        filter_names.append(command[0][1])

    if head[0] == ("ident", "index"):
        if len(head) < 3:
            raise TemplateSyntaxError("index needs a value and at least one key", template_name)
        return _Action(
            operand=_operand(head[1], template_name),
            index_args=tuple(_operand(t, template_name) for t in head[2:]),
            is_index=True,
            filters=tuple(filter_names),
        )

    if len(head) != 1:
        raise TemplateSyntaxError(f"unsupported command '{stripped}'", template_name)
    if head[0][0] == "ident":
        raise TemplateSyntaxError(f"function '{head[0][1]}' not defined", template_name)
    return _Action(operand=_operand(head[0], template_name), filters=tuple(filter_names))


class CompiledTemplate:
    """A parsed template: literal text interleaved with actions."""

    def __init__(self, name: str, source: str, parts: List[Union[str, _Action]], is_literal: bool = False):
        self.name = name
        self.source = source
        self.parts = parts
        self.is_literal = is_literal

    def render(self, view: Dict[str, Any]) -> str:
        if self.is_literal:
            return self.source
        return "".join(
            part if isinstance(part, str) else part.evaluate(view, self.name)
            for part in self.parts
        )

    def __repr__(self) -> str:
        return f"CompiledTemplate(name={self.name!r}, parts={len(self.parts)})"


def compile_template(name: str, source: str) -> CompiledTemplate:
    matches = list(_action_regex.finditer(source))
    if not matches:
        if "{{" in source:
            raise TemplateSyntaxError("unclosed action: '{{' without matching '}}'", name)
        return CompiledTemplate(name, source, [source], is_literal=True)

    parts: List[Union[str, _Action]] = []
    last_end = 0
    trim_next = False
    for match in matches:
        literal = source[last_end:match.start()]
        inner = match.group(1)
        if trim_next:
            literal = literal.lstrip()
        if inner.startswith("- "):
            literal = literal.rstrip()
            inner = inner[2:]
        trim_next = inner.endswith(" -")
        if trim_next:
            inner = inner[:-2]
        if literal:
            parts.append(literal)
        action = _parse_action(inner, name)
        if action is not None:
            parts.append(action)
        last_end = match.end()

    tail = source[last_end:]
    if trim_next:
        tail = tail.lstrip()
    if "{{" in tail:
        raise TemplateSyntaxError("unclosed action: '{{' without matching '}}'", name)
    if tail:
        parts.append(tail)
    return CompiledTemplate(name, source, parts)


# ---------------------------
# Cache
# ---------------------------
class TemplateCache:
    """Compiled templates keyed by template_key(); populated on first use."""

    def __init__(self):
        self._templates: Dict[str, CompiledTemplate] = {}

    def get(self, key: str, source: str) -> CompiledTemplate:
        compiled = self._templates.get(key)
        if compiled is None:
            compiled = compile_template(key, source)
            self._templates[key] = compiled
            logger.debug(f"Compiled template '{key}' ({len(compiled.parts)} parts)")
        return compiled

    def __contains__(self, key: str) -> bool:
        return key in self._templates

    def __len__(self) -> int:
        return len(self._templates)

    def keys(self) -> List[str]:
        return list(self._templates)


# ---------------------------
# Binding a definition
# ---------------------------
WS_SCHEMES = ("ws", "wss")


@dataclass
class BoundRequest:
    """Concrete request produced by rendering a definition against a context."""
    method: str
    url: str
    headers: CIMultiDict = field(default_factory=CIMultiDict)
    body: str = ""
    setup_body: str = ""


class TemplateBinder:
    def __init__(self, definition, cache: Optional[TemplateCache] = None):
        self.definition = definition
        self.cache = cache if cache is not None else TemplateCache()

    def _key(self, role: str) -> str:
        return template_key(self.definition.method, self.definition.url, role)

    def render_url(self, view: Dict[str, Any]) -> str:
        return self.cache.get(self._key("url"), self.definition.url).render(view)

    def render_body(self, view: Dict[str, Any]) -> str:
        return self.cache.get(self._key("body"), self.definition.body).render(view)

    def render_setup_body(self, view: Dict[str, Any]) -> str:
        return self.cache.get(self._key("setup_body"), self.definition.setup_body).render(view)

    def render_headers(self, view: Dict[str, Any]) -> CIMultiDict:
        headers: CIMultiDict = CIMultiDict()
        for index, (name_source, value_source) in enumerate(self.definition.headers.items()):
            role = f"header_{index}_{sanitize_key(name_source)}"
            name = self.cache.get(self._key(role), name_source).render(view).strip()
            value = self.cache.get(self._key(f"{role}_value"), value_source).render(view)
            if not name:
                raise TemplateRenderError(f"header name template '{name_source}' rendered empty", self._key(role))
            if name in headers:
                logger.debug(f"Header '{name}' rendered more than once; keeping the later value.")
            # Case-insensitive replace: later duplicates win
            headers[name] = value
        return headers

    def bind(self, context) -> BoundRequest:
        view = context.template_view()
        url = self.render_url(view)
        setup_body = ""
        # setup_body is sent once, on the freshly dialed WebSocket
        if context.iteration == 0 and urlparse(url).scheme.lower() in WS_SCHEMES:
            setup_body = self.render_setup_body(view)
        return BoundRequest(
            method=self.definition.method,
            url=url,
            headers=self.render_headers(view),
            body=self.render_body(view),
            setup_body=setup_body,
        )
