from typing import Optional


class IndexReadinessError(Exception):
    """Base error for everything raised by index_readiness."""


class TransientLookupError(IndexReadinessError):
    """A status lookup failed in a way that is worth retrying on the next poll."""


class FatalLookupError(IndexReadinessError):
    """A status lookup failed in a way that retrying will not fix."""


class IndexBuildFailed(IndexReadinessError):
    def __init__(self, index_name: str, detail: Optional[str] = None):
        self.index_name = index_name
        self.detail = detail
        message = f"Index '{index_name}' failed to build"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class PollTimedOut(IndexReadinessError, TimeoutError):
    def __init__(self, index_name: str, elapsed: float):
        self.index_name = index_name
        self.elapsed = elapsed
        super().__init__(
            f"Index '{index_name}' did not become queryable within {elapsed:.1f} seconds"
        )
