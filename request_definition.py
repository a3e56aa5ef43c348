# request_definition.py

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from requrse_errors import DefinitionError
from response_normalizer import NormalizedResponse

logger = logging.getLogger("requrse.definition")

__all__ = [
    "RequestDefinition",
    "RequestContext",
    "load_definition",
    "load_definition_file",
    "parse_extra_pairs",
]


def _scalar_to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ---------------------------
# Request Definition
# ---------------------------
class RequestDefinition(BaseModel):
    """
    Declarative description of the request sent on every iteration.
    Loaded once and never mutated; compiled templates live in the binder's cache.
    """
    name: str = Field("", description="Informational name of the definition")
    url: str = Field(..., description="Target URL template (http, https, ws or wss once rendered)")
    headers: Dict[str, str] = Field(default_factory=dict, description="Header name template -> header value template, rendered in insertion order")
    setup_body: str = Field("", description="WebSocket only: template sent once before the first real exchange")
    body: str = Field("", description="Body template")
    method: str = Field("GET", description="HTTP verb, ignored for WebSocket targets")
    stop_when: List[str] = Field(default_factory=list, description="jq expressions; the run stops as soon as one of them produces a value")
    lists: List[List[str]] = Field(default_factory=list, description="Parallel value lists consumed one index per iteration")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("name", "setup_body", "body", mode="before")
    def coerce_text(cls, v):
        return _scalar_to_str(v)

    @field_validator("method", mode="before")
    def normalize_method(cls, v):
        method = _scalar_to_str(v).strip().upper()
        return method or "GET"

    @field_validator("headers", mode="before")
    def coerce_headers(cls, v):
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError(f"headers must be a mapping, got {type(v).__name__}")
        return {_scalar_to_str(k): _scalar_to_str(val) for k, val in v.items()}

    @field_validator("stop_when", mode="before")
    def coerce_stop_when(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("lists", mode="before")
    def coerce_lists(cls, v):
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError(f"lists must be a sequence of sequences, got {type(v).__name__}")
        coerced = []
        for index, values in enumerate(v):
            if not isinstance(values, list):
                raise ValueError(f"lists[{index}] must be a sequence, got {type(values).__name__}")
            coerced.append([_scalar_to_str(item) for item in values])
        return coerced


# ---------------------------
# Iteration Context
# ---------------------------
class RequestContext(BaseModel):
    """Mutable state threaded through every iteration of a run. Templates see nothing else."""
    host: str = ""
    iteration: int = 0
    page: int = 1
    page_size: int = 0
    result_offset: int = 0
    auth_token: str = ""
    extra: Dict[str, Any] = Field(default_factory=dict)
    list_params: List[str] = Field(default_factory=list)
    last_response: Optional[NormalizedResponse] = None

    def advance(
        self,
        iteration: int,
        list_params: Optional[List[str]] = None,
        last_response: Optional[NormalizedResponse] = None,
    ) -> None:
        self.iteration = iteration
        self.page = iteration + 1
        self.result_offset = self.page_size * iteration
        if list_params is not None:
            self.list_params = list_params
        if last_response is not None:
            self.last_response = last_response

    def template_view(self) -> Dict[str, Any]:
        """
        Mapping rendered templates are evaluated against. Keys use the
        capitalised names found in request definitions ({{.Page}}), with
        snake_case aliases for the same values.
        """
        last = self.last_response.template_view() if self.last_response is not None else None
        view = {
            "Host": self.host,
            "Iteration": self.iteration,
            "Page": self.page,
            "PageSize": self.page_size,
            "ResultOffset": self.result_offset,
            "AuthToken": self.auth_token,
            "Extra": self.extra,
            "ListParams": list(self.list_params),
            "LastResponse": last,
        }
        view.update({
            "host": self.host,
            "iteration": self.iteration,
            "page": self.page,
            "page_size": self.page_size,
            "result_offset": self.result_offset,
            "auth_token": self.auth_token,
            "extra": self.extra,
            "list_params": view["ListParams"],
            "last_response": last,
        })
        return view


# ---------------------------
# Loading
# ---------------------------
def load_definition(data: Union[bytes, str]) -> RequestDefinition:
    """Parse a YAML request definition. Raises DefinitionError on any problem."""
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DefinitionError(f"Request definition is not valid UTF-8: {e}") from e

    try:
        document = YAML(typ="safe").load(data)
    except YAMLError as e:
        raise DefinitionError(f"Malformed request definition: {e}") from e

    if not isinstance(document, dict):
        raise DefinitionError(
            f"Request definition must be a mapping, got {type(document).__name__}"
        )

    try:
        definition = RequestDefinition.model_validate(document)
    except ValidationError as e:
        raise DefinitionError(f"Invalid request definition: {e}") from e

    logger.debug(
        f"Loaded definition '{definition.name or 'N/A'}': {definition.method} {definition.url} "
        f"({len(definition.headers)} headers, {len(definition.stop_when)} stop conditions, {len(definition.lists)} lists)"
    )
    return definition


def load_definition_file(path: Union[str, Path]) -> RequestDefinition:
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise DefinitionError(f"Cannot read request definition '{path}': {e}") from e
    return load_definition(data)


def parse_extra_pairs(pairs: Optional[Iterable[str]]) -> Dict[str, Any]:
    """
    Turn ["key=value", ...] into the context's extra bag. Scalar values are
    decoded the way YAML would ("10" -> 10, "true" -> True); anything else
    stays a string.
    """
    extra: Dict[str, Any] = {}
    if not pairs:
        return extra

    yaml = YAML(typ="safe")
    for pair in pairs:
        key, sep, raw_value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise DefinitionError(f"Extra data must look like key=value, got '{pair}'")

        value: Any = raw_value
        if raw_value.strip():
            try:
                decoded = yaml.load(raw_value)
            except YAMLError:
                decoded = raw_value
            if isinstance(decoded, (bool, int, float)):
                value = decoded
        extra[key] = value
    return extra
