# stop_conditions.py

import logging
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import jq

from requrse_errors import StopConditionError

logger = logging.getLogger("requrse.conditions")

__all__ = ["StopConditionEvaluator", "is_match"]

# halt_error with a non-null payload (false included) emits a match before halting
HALT_ERROR_PRELUDE = (
    "def halt_error($code): if . == null then halt else (. // true), halt end; "
    "def halt_error: halt_error(5); "
)


def is_match(value: Any) -> bool:
    """A result counts as a match unless it is null or false."""
    return value is not None and value is not False


class StopConditionEvaluator:
    """
    Decides whether iteration continues by running jq filters against the
    normalized response document. Any filter producing a match stops the run.
    """

    def __init__(self, expressions: Optional[Sequence[str]] = None):
        self.expressions: List[str] = list(expressions or [])
        self._programs: List[Tuple[str, Any]] = []
        for expression in self.expressions:
            try:
                self._programs.append((expression, jq.compile(HALT_ERROR_PRELUDE + expression)))
            except ValueError as e:
                raise StopConditionError(expression, f"compile error: {e}") from e
        logger.debug(f"Compiled {len(self._programs)} stop condition(s)")

    def __len__(self) -> int:
        return len(self._programs)

    def _results(self, expression: str, program: Any, document: Dict[str, Any]) -> Iterator[Any]:
        # jq streams lazily; `halt` and a null `halt_error` end the stream without a value
        try:
            for value in iter(program.input_value(document)):
                yield value
        except ValueError as e:
            raise StopConditionError(expression, f"evaluation error: {e}") from e

    def matching_condition(self, document: Dict[str, Any]) -> Optional[str]:
        """Return the first expression whose result stream produces a match, or None."""
        for expression, program in self._programs:
            for value in self._results(expression, program, document):
                if is_match(value):
                    logger.debug(f"Stop condition '{expression}' matched with {str(value)[:100]!s}")
                    return expression
            logger.debug(f"Stop condition '{expression}' did not match")
        return None

    def should_continue(self, document: Dict[str, Any]) -> bool:
        if not self._programs:
            # No stop condition: a single exchange
            return False
        return self.matching_condition(document) is None
