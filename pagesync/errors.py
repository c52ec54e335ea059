class PageSyncError(Exception):
    """Base class for errors raised by the build pipeline."""


class StageFailure(PageSyncError):
    """A pipeline stage failed; ``output`` holds the captured tool output."""

    def __init__(self, message, output=""):
        super().__init__(message)
        self.output = output


class CompileFailure(StageFailure):
    """The compiler exited non-zero or did not produce its artifact.

    This is the only failure that is fatal to a build job.
    """


class RenderFailure(StageFailure):
    """The page converter failed. Logged, previous pages stay visible."""


class ExtractionFailure(StageFailure):
    """The cross-reference log is missing or could not be parsed."""


class Superseded(PageSyncError):
    """Raised inside a stage when a newer build cancelled its job."""


class ToolNotFoundError(PageSyncError):
    pass


class DocumentNotFoundError(PageSyncError):
    pass
