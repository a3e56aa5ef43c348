import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional

from pydantic import ValidationError

from request_definition import RequestContext, load_definition_file, parse_extra_pairs
from request_runner import EngineConfig, RequestRunner, RunResult
from requrse_errors import RequrseError
from template_binder import sanitize_key

logger = logging.getLogger("requrse.invoker")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="requrse",
        description="Send HTTP or WebSocket requests until specific conditions are met",
    )
    parser.add_argument("definition_file", help="Path to the YAML request definition")
    parser.add_argument(
        "-e",
        "--extra",
        dest="extra",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra data exposed to templates as {{.Extra.KEY}} (repeatable)",
    )
    parser.add_argument("--host", default="localhost", help="Value of {{.Host}}")
    parser.add_argument("--auth-token", dest="auth_token", default="", help="Value of {{.AuthToken}}")
    parser.add_argument("--page-size", dest="page_size", type=int, default=10, help="Value of {{.PageSize}}, also drives {{.ResultOffset}}")
    parser.add_argument("--proxy", default=None, help="Send HTTP(S) requests through this proxy, e.g. http://127.0.0.1:8080")
    parser.add_argument(
        "-k",
        "--insecure",
        action="store_true",
        help="Skip TLS certificate verification (needed behind intercepting proxies)",
    )
    parser.add_argument(
        "--max-iterations",
        dest="max_iterations",
        type=int,
        default=None,
        help="Maximum number of requests in one run",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Total timeout in seconds for each HTTP exchange")
    parser.add_argument(
        "-o",
        "--output-dir",
        dest="output_dir",
        default=None,
        help="Write each response body to a file in this directory instead of printing it",
    )
    parser.add_argument("--log-level", dest="log_level", default="INFO", help="Logging level (DEBUG, INFO, WARNING)")
    return parser.parse_args(argv)


def make_output_sink(output_dir: Optional[str], name: str) -> Callable[[bytes], None]:
    """Return the per-response callback: files under output_dir, or stdout."""
    if output_dir is None:
        def print_response(body: bytes) -> None:
            sys.stdout.write(body.decode("utf-8", errors="replace"))
            sys.stdout.write("\n")
            sys.stdout.flush()
        return print_response

    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    prefix = sanitize_key(name) or "response"
    counter = {"n": 0}

    def write_response(body: bytes) -> None:
        path = directory / f"{prefix}-{counter['n']}.out"
        counter["n"] += 1
        path.write_bytes(body)
        logger.info(f"Wrote {len(body)} bytes to {path}")
    return write_response


async def run_requrse(args: argparse.Namespace) -> RunResult:
    definition = load_definition_file(args.definition_file)
    context = RequestContext(
        host=args.host,
        auth_token=args.auth_token,
        page_size=args.page_size,
        extra=parse_extra_pairs(args.extra),
    )
    cfg = EngineConfig(
        proxy=args.proxy,
        insecure=args.insecure,
        debug=args.log_level.upper() == "DEBUG",
        **{
            k: v
            for k, v in {
                "max_iterations": args.max_iterations,
                "total_timeout": args.timeout,
            }.items()
            if v is not None
        },
    )
    runner = RequestRunner(definition, cfg)
    return await runner.run(context, make_output_sink(args.output_dir, definition.name))


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    try:
        result = asyncio.run(run_requrse(args))
    except (RequrseError, ValidationError) as e:
        logger.error(f"Run aborted: {e}")
        return 1
    except KeyboardInterrupt:
        print("Stopping requrse...")
        return 130

    logger.info(f"Done: {result.iterations} request(s), stopped by {result.stop_reason}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
