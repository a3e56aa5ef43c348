# parameter_feed.py

import logging
from typing import List, Optional, Sequence

from requrse_errors import ParameterFeedExhausted

logger = logging.getLogger("requrse.feed")

__all__ = ["ParameterFeed"]


class ParameterFeed:
    """
    Parallel value lists advanced in lockstep ("pitchfork"): iteration i
    draws lists[0][i], lists[1][i], ...
    """

    def __init__(self, lists: Optional[Sequence[Sequence[str]]] = None):
        self.lists: List[List[str]] = [list(values) for values in (lists or [])]

    def __bool__(self) -> bool:
        return bool(self.lists)

    def __len__(self) -> int:
        return len(self.lists)

    @property
    def max_iterations(self) -> Optional[int]:
        """Length of the shortest list, None when no lists are configured."""
        if not self.lists:
            return None
        return min(len(values) for values in self.lists)

    def values_for(self, iteration: int) -> List[str]:
        values = []
        for list_index, current_list in enumerate(self.lists):
            if iteration >= len(current_list):
                raise ParameterFeedExhausted(list_index, iteration, len(current_list))
            value = current_list[iteration]
            if value != "":
                values.append(value)
            else:
                logger.warning(f"lists[{list_index}][{iteration}] is empty. Skipping value.")
        return values
