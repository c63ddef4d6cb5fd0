"""Error kinds raised by the catalog, tree and sync layers."""


class CatalogError(Exception):
    """Base class for all shelfsync errors."""


class NotFound(CatalogError):
    """A referenced record id does not exist."""


class ValidationFailure(CatalogError):
    """A required field is missing or a value is not acceptable."""


class DuplicateSibling(CatalogError):
    """Another category with the same name already exists under the same parent."""


class DepthExceeded(CatalogError):
    """The operation would place a category below the maximum level."""


class CycleDetected(CatalogError):
    """The operation would make a category its own ancestor."""


class TransportFailure(CatalogError):
    """A call to the remote store failed or timed out."""


class CascadeDeleteFailed(CatalogError):
    """Books of a deleted category subtree could not be reassigned.

    No category was deleted; the operation is safe to retry.
    """
