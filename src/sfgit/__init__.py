"""sfgit - publish Salesforce metadata changes to Git branches."""

from importlib.metadata import PackageNotFoundError, version

from sfgit.schemas import BatchReport, CommandResult, RetrievalResult, WorkUnit

__all__ = ["BatchReport", "CommandResult", "RetrievalResult", "WorkUnit"]

try:
    __version__ = version("sfgit")
except PackageNotFoundError:
    __version__ = "0.0.0"
