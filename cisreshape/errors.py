"""Exception hierarchy for the reshape pipeline.

Every fatal condition of a pipeline run derives from ReshapeError, which is
a ValueError so callers that only care about bad input can catch that.
"""

from typing import Optional


class ReshapeError(ValueError):
    """Base class for all pipeline validation failures."""


class SchemaMismatch(ReshapeError):
    """A source batch lacks one or more required columns."""

    def __init__(self, source: str, missing: list[str]):
        self.source = source
        self.missing = list(missing)
        super().__init__(
            f"Source '{source}' missing required columns: {self.missing}"
        )


class MissingIdentifierColumn(ReshapeError):
    """The timestamp or parameter name column is absent."""

    def __init__(self, missing: list[str], source: Optional[str] = None):
        self.missing = list(missing)
        self.source = source
        where = f" in '{source}'" if source else ""
        super().__init__(f"Missing identifier columns{where}: {self.missing}")


class ColumnNameCollision(ReshapeError):
    """Distinct parameter names normalize to the same column name."""

    def __init__(self, collisions: dict[str, list[str]]):
        self.collisions = collisions
        detail = "; ".join(
            f"{key!r} <- {names}" for key, names in sorted(collisions.items())
        )
        super().__init__(f"Parameter names collide after normalization: {detail}")


class DuplicateScalarObservation(ReshapeError):
    """A scalar parameter was observed more than once at one timestamp."""

    def __init__(self, pairs: list[tuple]):
        self.pairs = list(pairs)
        shown = ", ".join(f"({ts}, {name!r})" for ts, name in self.pairs[:5])
        more = f" and {len(self.pairs) - 5} more" if len(self.pairs) > 5 else ""
        super().__init__(
            f"{len(self.pairs)} duplicate scalar observation(s): {shown}{more}"
        )


class InvalidTimestamp(ReshapeError):
    """Timestamp values could not be parsed into instants."""

    def __init__(self, examples: list, source: Optional[str] = None):
        self.examples = list(examples)
        self.source = source
        where = f" in '{source}'" if source else ""
        super().__init__(f"Unparseable timestamps{where}: {self.examples[:5]}")


class WorkbookError(ReshapeError):
    """Tables could not be laid out as a workbook."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)
