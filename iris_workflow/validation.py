"""Precondition gate evaluated before a stage's operations are dispatched."""

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from iris_workflow.state import StateStore
from iris_workflow.utils.logging import get_logger

logger = get_logger("iris_workflow.validation")


def is_present(value: Any) -> bool:
    """Default predicate: defined, and not an empty or whitespace-only string."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def is_post_id(value: Any) -> bool:
    # bool is an int subclass; a flag is never a post id
    return isinstance(value, int) and not isinstance(value, bool)


def is_non_empty(value: Any) -> bool:
    return bool(value)


@dataclass(frozen=True)
class PreconditionRule:
    value: Any
    message: str
    predicate: Optional[Callable[[Any], bool]] = None

    def holds(self) -> bool:
        check = self.predicate or is_present
        return bool(check(self.value))


class PreconditionValidator:
    """Evaluates rules in order and records the first failure in the state.

    A non-None return means the operation must not be dispatched.
    """

    def __init__(self, store: StateStore):
        self.store = store

    def validate(self, rules: Iterable[PreconditionRule]) -> Optional[str]:
        for rule in rules:
            if rule.holds():
                continue
            logger.warning("precondition_failed", message=rule.message)
            self.store.replace_errors([rule.message])
            return rule.message
        return None
