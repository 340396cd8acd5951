from typing import Any, Dict, Optional

from loguru import logger
from pymongo.asynchronous.collection import AsyncCollection
from pymongo.errors import (
    ConnectionFailure,
    ExecutionTimeout,
    InvalidOperation,
    OperationFailure,
)
from pymongo.operations import SearchIndexModel

from index_readiness.errors import FatalLookupError, TransientLookupError
from index_readiness.models import IndexStatusSnapshot

NAMESPACE_NOT_FOUND = 26
INDEX_ALREADY_EXISTS = 68

RETRYABLE_ERROR_CODES = frozenset(
    {
        6,  # HostUnreachable
        7,  # HostNotFound
        89,  # NetworkTimeout
        91,  # ShutdownInProgress
        189,  # PrimarySteppedDown
        262,  # ExceededTimeLimit
        9001,  # SocketException
        10107,  # NotWritablePrimary
        11600,  # InterruptedAtShutdown
        11602,  # InterruptedDueToReplStateChange
        13435,  # NotPrimaryNoSecondaryOk
        13436,  # NotPrimaryOrSecondary
        NAMESPACE_NOT_FOUND,
    }
)


def is_transient(error: Exception) -> bool:
    """Whether a pymongo error raised by a status lookup is worth retrying.

    Transient: connection failures, server selection and network timeouts,
    operations killed by ``maxTimeMS``, anything labelled ``RetryableError``,
    primaries stepping down, nodes shutting down, and ``NamespaceNotFound``
    which shows up while the collection is still being created. Every other
    ``OperationFailure`` (missing privileges, invalid namespace, search not
    supported on the deployment) is fatal.
    """
    if isinstance(error, (ConnectionFailure, ExecutionTimeout)):
        return True
    if isinstance(error, OperationFailure):
        return (
            error.has_error_label("RetryableError")
            or error.code in RETRYABLE_ERROR_CODES
        )
    return False


def _is_duplicate_index(error: OperationFailure) -> bool:
    message = str(error)
    return (
        error.code == INDEX_ALREADY_EXISTS
        or "IndexAlreadyExists" in message
        or "DuplicateIndexName" in message
        or "already exists" in message
    )


class MongoIndexClient:
    def __init__(self, collection: AsyncCollection):
        self.collection = collection
        self.logger = logger

    async def get_index_status(self, name: str) -> Optional[IndexStatusSnapshot]:
        """Returns the status of the named search index, or None if it is not listed yet"""
        try:
            cursor = await self.collection.list_search_indexes(name)
            documents = await cursor.to_list(length=1)
        except (ConnectionFailure, OperationFailure) as e:
            if is_transient(e):
                raise TransientLookupError(
                    f"Search index lookup for '{name}' failed: {e}"
                ) from e
            raise FatalLookupError(
                f"Search index lookup for '{name}' rejected: {e}"
            ) from e
        except InvalidOperation as e:
            raise FatalLookupError(
                f"Cannot look up search index '{name}': {e}"
            ) from e

        if not documents:
            return None
        return IndexStatusSnapshot.from_document(documents[0])

    async def ensure_search_index(
        self,
        name: str,
        definition: Dict[str, Any],
        index_type: str = "search",
    ) -> bool:
        """Submits the index build unless an index with this name already exists.

        Returns True if a build was submitted and False if the index was
        already there, including when another process created it first.
        """
        existing = await self.get_index_status(name)
        if existing is not None:
            self.logger.info(
                f"Search index '{name}' already exists (status: {existing.status.value})"
            )
            return False

        model = SearchIndexModel(definition=definition, name=name, type=index_type)
        try:
            self.logger.info(f"Creating search index '{name}' of type '{index_type}'...")
            await self.collection.create_search_index(model=model)
        except OperationFailure as e:
            if _is_duplicate_index(e):
                self.logger.warning(
                    f"Race condition: index '{name}' was created by another process"
                )
                return False
            self.logger.error(f"Creating search index '{name}' failed: {e.details}")
            raise

        self.logger.info(f"Search index '{name}' build has been submitted")
        return True
