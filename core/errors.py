"""
Error Taxonomy for Tabular Suppression.

HIERARCHY / MICRODATA ERRORS (fatal, detected at build time):
- DuplicateNameError: a category name repeats within a hierarchy or table
- UnknownNodeError: a referenced category does not exist
- HierarchyFrozenError: a hierarchy was modified after a table consumed it
- UnmatchedCategoryError: a microdata value is not a leaf of its hierarchy

SOLVER ERRORS (retryable by switching strategy):
- ProblemTooLargeError: the exact search space is impractical
- SolverTimeoutError: the exact search hit its time limit

OVERRIDE ERRORS (fatal, never retried automatically):
- InfeasibleError: overrides contradict the protection requirements
"""

from typing import Optional, Sequence


class SDCError(Exception):
    """Base class for all suppression engine errors."""

    retryable = False


class HierarchyError(SDCError):
    """Malformed hierarchy definition."""


class DuplicateNameError(HierarchyError):
    """A category name appears more than once."""

    def __init__(self, name: str, context: str = ""):
        self.name = name
        where = f" in {context}" if context else ""
        super().__init__(f"Duplicate category name {name!r}{where}")


class UnknownNodeError(HierarchyError):
    """A referenced category does not exist in the hierarchy."""

    def __init__(self, name: str, context: str = ""):
        self.name = name
        where = f" in {context}" if context else ""
        super().__init__(f"Unknown category {name!r}{where}")


class HierarchyFrozenError(HierarchyError):
    """The hierarchy is read-only because a table was built from it."""


class UnmatchedCategoryError(SDCError):
    """A microdata record references a category that is not a hierarchy leaf."""

    def __init__(self, value: str, dimension: str, record_id: Optional[object] = None):
        self.value = value
        self.dimension = dimension
        self.record_id = record_id
        rec = f" (record {record_id!r})" if record_id is not None else ""
        super().__init__(
            f"Category {value!r} is not a leaf of dimension {dimension!r}{rec}"
        )


class SolverError(SDCError):
    """A secondary suppression strategy could not finish; try another strategy."""

    retryable = True


class ProblemTooLargeError(SolverError):
    """The exact search space exceeds the configured limits."""


class SolverTimeoutError(SolverError):
    """The exact search stopped at its time limit without a usable pattern."""


class InfeasibleError(SDCError):
    """No suppression pattern satisfies both the overrides and the protection rules."""

    def __init__(self, message: str, cells: Optional[Sequence[tuple]] = None):
        self.cells = list(cells or [])
        super().__init__(message)
