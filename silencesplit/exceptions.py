# silencesplit/exceptions.py

from typing import Optional


class SilenceSplitError(Exception):
    """Base class for all errors raised by the silence split pipeline."""


class ProbeError(SilenceSplitError):
    """The media tool could not be run, failed, or produced unusable output."""


class InvalidAudioError(ProbeError):
    """The file has no decodable audio stream."""


class InvalidInputError(SilenceSplitError):
    """The file handed to the splitter cannot be split."""


class SplitError(SilenceSplitError):
    """A failure somewhere in the split pipeline. The original cause is kept."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class RestoreError(SplitError):
    """
    Restoring the original file from its backup failed after a split error.

    The state of the file at `path` is unknown and must be looked at by an operator.
    """

    needs_manual_review = True

    def __init__(self, path: str, original_error: BaseException, restore_error: BaseException) -> None:
        message = (
            f"Restore of '{path}' failed after split error ({original_error}); "
            f"restore error: {restore_error}. File state is unknown, manual review required."
        )
        super().__init__(message, cause=original_error)
        self.path = path
        self.original_error = original_error
        self.restore_error = restore_error
