"""Error taxonomy shared by the pipeline, session and review subsystems.

Callers branch on the class, never on the message:

- ``ValidationError``: bad input, surfaced immediately, never retried.
- ``TransientProviderError``: timeout or rate limit from a model call,
  retried with bounded backoff and then downgraded to ``needs_review``.
- ``ConflictError``: duplicate claim or duplicate active session; the caller
  must re-read state before trying again.
- ``StorageError``: the Document Store could not persist state. Fatal to the
  current document only.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from docsense.pipeline.session import RollbackReport


class DocsenseError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(DocsenseError):
    """Input is malformed (unsupported file, invalid schema, bad payload)."""


class NotFoundError(DocsenseError):
    """A referenced document, session or task does not exist."""


class ConflictError(DocsenseError):
    """State changed underneath the caller (lost claim, active session exists)."""


class InvalidTransitionError(ConflictError):
    """A status change was requested along an edge that does not exist."""


class AuthorizationError(DocsenseError):
    """The acting user is not allowed to act on the document."""


class StorageError(DocsenseError):
    """The Document Store failed to read or persist state."""


class ProviderError(DocsenseError):
    """A model call failed in a way that retrying will not fix."""


class TransientProviderError(ProviderError):
    """A model call timed out or was rate limited."""


class StageError(DocsenseError):
    """An optional pipeline stage failed and was degraded around.

    Args:
        stage: Name of the stage that failed.
        reason: Diagnostic message.
    """

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"{stage} failed: {reason}")
        self.stage = stage
        self.reason = reason


class PartialRollbackError(DocsenseError):
    """Some documents could not be rolled back during cancellation.

    Returned on the rollback report rather than raised, so that cancellation
    never blocks on a handful of contended writes.
    """

    def __init__(self, report: RollbackReport) -> None:
        failed = ", ".join(sorted(report.not_rolled_back))
        super().__init__(
            f"rolled back {report.count} document(s); failed for: {failed}"
        )
        self.report = report
