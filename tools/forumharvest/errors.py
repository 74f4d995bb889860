"""Exception hierarchy for the harvester.

Library errors (Playwright, httpx, botocore, psycopg) are translated into
these at the module that talks to the library, so the orchestrator only has
to reason about the harvester's own failure kinds.
"""

from __future__ import annotations


class HarvesterError(Exception):
    """Base class for every error raised by forumharvest."""


class PartitionMisconfiguration(HarvesterError):
    """Worker index/count pair is invalid.  Fatal at startup."""


class SessionError(HarvesterError):
    """The browser session could not be (re-)authenticated."""


class NavigationError(HarvesterError):
    """The main crawl page could not be navigated."""


class NavigationTimeout(NavigationError):
    pass


class ExtractionFailure(HarvesterError):
    """The extraction adapter raised or returned malformed data."""


class AssetResolutionFailure(HarvesterError):
    """A media URL could not be resolved to bytes."""


class StorageWriteFailure(HarvesterError):
    pass


class PersistenceFailure(HarvesterError):
    pass


class MemoryExhaustion(HarvesterError):
    """Host memory fell below the configured floor; a host restart was requested."""


class RetryExhausted(HarvesterError):
    """Terminal result of :class:`forumharvest.retry.RetryPolicy`."""

    def __init__(self, description: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"{description}: gave up after {attempts} attempt(s): {last_error}")
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
