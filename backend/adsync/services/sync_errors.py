"""Pipeline-side error types.

Upstream failures live in `adsync.services.ads_api_client` (AuthError,
TransientUpstreamError, ...). The types here describe local failures:

- MappingError: a row references a parent entity not present locally.
  The row is skipped and logged; a later full pass resolves it.
- PersistenceError: a batch write failed (constraint violation, etc.).
  Only that batch is rolled back; sibling batches continue.
- MissingCredentialError: the account's identity has no usable token.
"""


class SyncError(Exception):
    """Base exception for local sync failures."""
    pass


class MappingError(SyncError):
    """Parent entity not found locally for an upstream row."""

    def __init__(self, message: str, external_id: str = None):
        super().__init__(message)
        self.external_id = external_id


class PersistenceError(SyncError):
    """A batch upsert failed and was rolled back."""

    def __init__(self, message: str, table: str = None, rows: int = 0):
        super().__init__(message)
        self.table = table
        self.rows = rows


class MissingCredentialError(SyncError):
    """No active, decryptable credential exists for the account."""
    pass
