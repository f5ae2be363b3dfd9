class CrateError(Exception):
    """Base class for errors raised by the crate service."""


class InvalidArtifact(CrateError):
    """Upload input is malformed or oversized. Raised before any store is touched."""


class ArtifactNotFound(CrateError):
    """No live crate for the id.

    Raised alike for ids that never existed, were deleted or have expired.
    """

    def __init__(self, artifact_id: str = ""):
        super().__init__("crate not found")
        self.artifact_id = artifact_id


class StorageUnavailable(CrateError):
    """A Content Store or Metadata Store call failed. Retryable by the caller."""


class OrphanWrite(StorageUnavailable):
    """Bytes were stored but the metadata record could not be written."""

    def __init__(self, artifact_id: str, storage_locator: str):
        super().__init__(f"metadata write failed for {artifact_id}; orphaned object at {storage_locator}")
        self.artifact_id = artifact_id
        self.storage_locator = storage_locator
