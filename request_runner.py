# request_runner.py

import inspect
import logging
import time
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, field_validator

from parameter_feed import ParameterFeed
from request_definition import RequestContext, RequestDefinition
from request_transport import RequestTransport
from response_normalizer import NormalizedResponse
from stop_conditions import StopConditionEvaluator
from template_binder import BoundRequest, TemplateBinder, TemplateCache

# --- Logging Setup ---
logger = logging.getLogger("RequestRunner")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
logger.propagate = False

__all__ = [
    "EngineConfig",
    "RunResult",
    "RequestRunner",
    "run_definition",
    "STOP_NO_CONDITION",
    "STOP_CONDITION_MATCHED",
    "STOP_MAX_ITERATIONS",
]

STOP_NO_CONDITION = "no_stop_condition"
STOP_CONDITION_MATCHED = "condition_matched"
STOP_MAX_ITERATIONS = "max_iterations"

DEFAULT_MAX_ITERATIONS = 100

ResponseCallback = Callable[[bytes], Any]


# ---------------------------
# Configuration Models
# ---------------------------
class EngineConfig(BaseModel):
    """Runtime configuration for RequestRunner."""
    proxy: Optional[str] = Field(None, description="Outbound proxy for HTTP(S) requests, e.g. http://127.0.0.1:8080")
    insecure: bool = Field(default=False, description="Skip TLS certificate verification (intercepting proxies)")
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1, description="Hard cap on exchanges per run")
    total_timeout: Optional[float] = Field(default=60.0, gt=0, description="Max seconds for one HTTP exchange, None to wait forever")
    connect_timeout: Optional[float] = Field(default=10.0, gt=0, description="Max seconds to establish a connection")
    read_timeout: Optional[float] = Field(default=30.0, gt=0, description="Max seconds between reads, also bounds each WebSocket reply")
    debug: bool = Field(default=False, description="Enable debug logging")

    model_config = ConfigDict(extra="forbid")

    @field_validator('proxy')
    def validate_proxy(cls, v):
        if v is None or v == "":
            return None
        parsed = urlparse(v)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"proxy must be an absolute URL (e.g. 'http://127.0.0.1:8080'), got '{v}'")
        return v

    def client_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.total_timeout,
            connect=self.connect_timeout,
            sock_read=self.read_timeout,
        )


class RunResult(BaseModel):
    iterations: int = Field(0, description="Number of exchanges performed")
    stop_reason: str = Field(..., description="no_stop_condition | condition_matched | max_iterations")
    last_response: Optional[NormalizedResponse] = None


# ---------------------------
# Iteration Controller
# ---------------------------
class RequestRunner:
    """
    Drives one run: advance context -> bind templates -> exchange ->
    normalize/evaluate -> dispatch, until a stop condition matches or the
    iteration cap is reached. Strictly sequential; any error ends the run.
    """

    def __init__(self, definition: RequestDefinition, config: Optional[EngineConfig] = None):
        self.definition = definition
        self.config = config or EngineConfig()
        self.configure_logging(self.config.debug)

        self.template_cache = TemplateCache()
        self.binder = TemplateBinder(definition, self.template_cache)
        # Compiles every expression now: a bad filter fails before any request is sent
        self.evaluator = StopConditionEvaluator(definition.stop_when)
        self.feed = ParameterFeed(definition.lists)
        self.transport: Optional[RequestTransport] = None

        logger.info(
            f"Request Runner Initialized: '{definition.name or 'N/A'}' {definition.method} {definition.url}, "
            f"Stop Conditions={len(self.evaluator)}, Lists={len(self.feed)} (shortest={self.feed.max_iterations or 0}), Max Iterations={self.config.max_iterations}, "
            f"Proxy={self.config.proxy or 'None'}, Insecure={self.config.insecure}"
        )

    def configure_logging(self, debug: bool):
        """Configures the logger level based on the debug flag."""
        log_level = logging.DEBUG if debug else logging.INFO
        logger.setLevel(log_level)
        for handler in logger.handlers:
            handler.setLevel(log_level)
        logging.getLogger("requrse").setLevel(log_level)

    def create_transport(self) -> RequestTransport:
        return RequestTransport(
            self.evaluator,
            proxy=self.config.proxy,
            insecure=self.config.insecure,
            timeout=self.config.client_timeout(),
        )

    def _log_request(self, bound: BoundRequest, iteration: int):
        if not logger.isEnabledFor(logging.DEBUG):
            return
        log_headers = {
            k: ('********' if k.lower() in ('authorization', 'cookie') and v else v)
            for k, v in bound.headers.items()
        }
        body_preview = f"{bound.body[:200]}{'...' if len(bound.body) > 200 else ''}"
        logger.debug(f"\n--- REQUEST START ---\n"
                     f"Iteration: {iteration}\n"
                     f"URL: {bound.method} {bound.url}\n"
                     f"Headers: {log_headers}\n"
                     f"Body: {body_preview or 'None'}\n"
                     f"---------------------")

    async def _dispatch(self, on_response: Optional[ResponseCallback], body: bytes, iteration: int):
        """Hand the raw body to the caller. Callback failures never change the run's outcome."""
        if on_response is None:
            return
        try:
            result = on_response(body)
            if inspect.isawaitable(result):
                await result
        except Exception as cb_err:
            logger.error(f"Error during on_response callback for iteration {iteration}: {cb_err}", exc_info=self.config.debug)

    async def run(self, context: RequestContext, on_response: Optional[ResponseCallback] = None) -> RunResult:
        iterations = 0
        last_response: Optional[NormalizedResponse] = context.last_response
        stop_reason = STOP_MAX_ITERATIONS

        self.transport = self.create_transport()
        try:
            await self.transport.start()
            for iteration in range(self.config.max_iterations):
                # --- Advance ---
                list_params = self.feed.values_for(iteration) if self.feed else None
                context.advance(iteration, list_params, last_response)

                # --- Bind ---
                bound = self.binder.bind(context)
                self._log_request(bound, iteration)

                # --- Exchange / Normalize / Evaluate ---
                exchange = await self.transport.exchange(bound, iteration)
                iterations += 1
                last_response = exchange.response
                status = exchange.response.status or "-"
                logger.info(
                    f"Iteration {iteration} received: {status} {bound.method} {bound.url} "
                    f"({len(exchange.body)} bytes, {exchange.elapsed_ms:.2f} ms)"
                )

                # --- Dispatch ---
                await self._dispatch(on_response, exchange.body, iteration)

                if not exchange.should_continue:
                    stop_reason = STOP_CONDITION_MATCHED if len(self.evaluator) else STOP_NO_CONDITION
                    logger.info(f"Run finished after {iterations} exchange(s): {stop_reason}")
                    break
            else:
                logger.warning(
                    f"Reached max_iterations ({self.config.max_iterations}) without a stop condition matching. Stopping."
                )
        finally:
            await self.transport.close()
            self.transport = None

        return RunResult(iterations=iterations, stop_reason=stop_reason, last_response=last_response)


async def run_definition(
    definition: RequestDefinition,
    context: RequestContext,
    on_response: Optional[ResponseCallback] = None,
    proxy: Optional[str] = None,
    **config: Any,
) -> RunResult:
    """Convenience entry point: build an EngineConfig, run once, return the result."""
    runner = RequestRunner(definition, EngineConfig(proxy=proxy, **config))
    return await runner.run(context, on_response)
