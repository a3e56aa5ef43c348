# requrse_errors.py

from typing import Optional

__all__ = [
    "RequrseError",
    "DefinitionError",
    "TemplateError",
    "TemplateSyntaxError",
    "TemplateRenderError",
    "TransportError",
    "UnsupportedSchemeError",
    "StopConditionError",
    "ParameterFeedExhausted",
]


class RequrseError(Exception):
    """Base class for every fatal condition raised by the engine."""


class DefinitionError(RequrseError):
    """The request definition document is malformed."""


class TemplateError(RequrseError):
    def __init__(self, message: str, template_name: Optional[str] = None):
        self.template_name = template_name
        if template_name:
            message = f"{template_name}: {message}"
        super().__init__(message)


class TemplateSyntaxError(TemplateError):
    """Raised when a template cannot be compiled."""


class TemplateRenderError(TemplateError):
    """Raised when a compiled template references something the context does not have."""


class TransportError(RequrseError):
    """Dial, write, read or protocol failure. Never retried."""


class UnsupportedSchemeError(TransportError):
    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Unsupported URL scheme in '{url}' (expected http, https, ws or wss)")


class StopConditionError(RequrseError):
    def __init__(self, expression: str, reason: str):
        self.expression = expression
        super().__init__(f"Stop condition '{expression}' failed: {reason}")


class ParameterFeedExhausted(RequrseError):
    def __init__(self, list_index: int, iteration: int, list_length: int):
        self.list_index = list_index
        self.iteration = iteration
        self.list_length = list_length
        super().__init__(
            f"lists[{list_index}] is exhausted: iteration {iteration} needs index {iteration} "
            f"but the list only has {list_length} value(s)"
        )
