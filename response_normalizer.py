# response_normalizer.py

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel, Field

logger = logging.getLogger("requrse.normalizer")

__all__ = [
    "SimpleRequest",
    "NormalizedResponse",
    "decode_body",
    "parse_body",
    "canonical_header_name",
    "normalize_http",
    "normalize_ws",
]


class SimpleRequest(BaseModel):
    path: str = Field("", description="Path of the URL that produced the response")
    query: Dict[str, List[str]] = Field(default_factory=dict, description="Parsed query parameters (name -> values)")


class NormalizedResponse(BaseModel):
    """
    Uniform, queryable view of one response, whichever protocol produced it.
    Field names are the ones stop conditions and templates see.
    """
    request: SimpleRequest = Field(default_factory=SimpleRequest)
    status: int = Field(0, description="HTTP status code, 0 for WebSocket messages")
    raw_body: str = Field("", description="Body decoded as UTF-8 (invalid bytes replaced)")
    body_object: Optional[Dict[str, Any]] = Field(None, description="Body parsed as a JSON object, null if it is not one")
    body_array: Optional[List[Any]] = Field(None, description="Body parsed as a JSON array, null if it is not one")
    content_type: str = ""
    headers: Dict[str, List[str]] = Field(default_factory=dict, description="Response headers (name -> values)")

    def as_document(self) -> Dict[str, Any]:
        """Plain JSON-compatible structure, as seen by stop conditions."""
        return self.model_dump(mode="json")

    def template_view(self) -> Dict[str, Any]:
        """
        Document form plus capitalised aliases ({{.LastResponse.BodyObject.next}},
        {{.LastResponse.Request.Path}}) matching the naming of the context keys.
        """
        view = self.as_document()
        request = dict(view["request"])
        request.update({"Path": request["path"], "Query": request["query"]})
        view["request"] = request
        view.update({
            "Request": request,
            "Status": view["status"],
            "RawBody": view["raw_body"],
            "BodyObject": view["body_object"],
            "BodyArray": view["body_array"],
            "ContentType": view["content_type"],
            "Headers": view["headers"],
        })
        return view


def decode_body(body: Union[bytes, str, None]) -> str:
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    return body.decode("utf-8", errors="replace")


def parse_body(raw: str) -> Tuple[Optional[Dict[str, Any]], Optional[List[Any]]]:
    """
    Best-effort parse of a body as a JSON object and as a JSON array.
    Never raises: anything that is not valid JSON of the right shape yields None.
    """
    if not raw or not raw.strip():
        return None, None
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.debug(f"Body is not JSON ({len(raw)} chars). Keeping raw text only.")
        return None, None

    body_object = parsed if isinstance(parsed, dict) else None
    body_array = parsed if isinstance(parsed, list) else None
    return body_object, body_array


def _request_from_url(url: str) -> SimpleRequest:
    parsed = urlparse(url)
    return SimpleRequest(
        path=parsed.path,
        query=parse_qs(parsed.query, keep_blank_values=True),
    )


def canonical_header_name(name: str) -> str:
    """content-type -> Content-Type, the form HTTP/1 servers conventionally use."""
    return "-".join(part.capitalize() for part in name.split("-"))


def _header_multimap(headers: Optional[Mapping[str, str]]) -> Dict[str, List[str]]:
    multimap: Dict[str, List[str]] = {}
    if not headers:
        return multimap
    # aiohttp's CIMultiDictProxy yields repeated keys once per value
    for name, value in headers.items():
        multimap.setdefault(canonical_header_name(name), []).append(value)
    return multimap


def normalize_http(
    url: str,
    status: int,
    headers: Optional[Mapping[str, str]],
    body: Union[bytes, str, None],
) -> NormalizedResponse:
    raw = decode_body(body)
    body_object, body_array = parse_body(raw)
    header_map = _header_multimap(headers)
    content_type = header_map.get("Content-Type", [""])[0]

    return NormalizedResponse(
        request=_request_from_url(url),
        status=status,
        raw_body=raw,
        body_object=body_object,
        body_array=body_array,
        content_type=content_type,
        headers=header_map,
    )


def normalize_ws(url: str, message: Union[bytes, str, None]) -> NormalizedResponse:
    raw = decode_body(message)
    body_object, body_array = parse_body(raw)
    return NormalizedResponse(
        request=_request_from_url(url),
        status=0,
        raw_body=raw,
        body_object=body_object,
        body_array=body_array,
    )
