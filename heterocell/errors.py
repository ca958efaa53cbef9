"""Error taxonomy for the analysis pipeline.

Structural failures raise one of the exceptions below. Per-gene and
per-component anomalies are not raised to the caller; engines record them
in an exclusion table and log a warning instead.
"""

from typing import Any, Dict, Optional, Tuple


class PipelineError(Exception):
    """Base class for pipeline failures.

    Parameters
    ----------
    message : str
        Human-readable description
    stage : str, optional
        Stage name where the failure occurred
    params : Dict[str, Any], optional
        Parameters the stage was running with
    counts_before : int, optional
        Number of items (cells, genes) entering the stage
    counts_after : int, optional
        Number of items left when the stage failed
    """

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        counts_before: Optional[int] = None,
        counts_after: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.params = dict(params or {})
        self.counts_before = counts_before
        self.counts_after = counts_after

    def context(self) -> Dict[str, Any]:
        """Return the failure context as a dictionary."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "stage": self.stage,
            "params": self.params,
            "counts_before": self.counts_before,
            "counts_after": self.counts_after,
        }

    def __str__(self) -> str:
        parts = [self.message]
        if self.stage:
            parts.append(f"stage={self.stage}")
        if self.counts_before is not None or self.counts_after is not None:
            parts.append(f"counts={self.counts_before}->{self.counts_after}")
        return " | ".join(parts)


class MalformedIdentifier(PipelineError):
    """A cell identifier cannot be split into donor, barcode and replicate."""

    def __init__(self, identifier: str, position: Optional[int] = None, **kwargs):
        message = f"Malformed cell identifier: {identifier!r}"
        if position is not None:
            message += f" (position {position})"
        kwargs.setdefault("stage", "metadata")
        super().__init__(message, **kwargs)
        self.identifier = identifier
        self.position = position


class EmptyAfterFilter(PipelineError):
    """Quality control removed every cell."""


class InsufficientOverlap(PipelineError):
    """A batch pair shares too few comparable directions or anchors."""

    def __init__(self, message: str, pair: Tuple[str, str], **kwargs):
        kwargs.setdefault("stage", "integration")
        super().__init__(message, **kwargs)
        self.pair = tuple(pair)

    def context(self) -> Dict[str, Any]:
        ctx = super().context()
        ctx["pair"] = list(self.pair)
        return ctx


class DegenerateInput(PipelineError):
    """A gene or component has zero variance."""

    def __init__(self, message: str, name: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.name = name


class DuplicateAnnotationKey(PipelineError):
    """The annotation table has duplicate keys under the ``reject`` policy."""

    def __init__(self, keys, **kwargs):
        keys = list(keys)
        preview = ", ".join(map(str, keys[:5]))
        if len(keys) > 5:
            preview += ", ..."
        kwargs.setdefault("stage", "metadata")
        super().__init__(
            f"Annotation table has {len(keys)} duplicate key(s): {preview}",
            **kwargs,
        )
        self.keys = keys


class RegistryConflict(PipelineError):
    """A result is already registered under the same key."""
