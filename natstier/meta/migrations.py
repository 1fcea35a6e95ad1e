"""Schema migrations for the metadata database."""

from __future__ import annotations

from .buckets import BucketDB
from .schema import (
    BUCKET_STREAMS,
    BUCKET_SYSTEM,
    KEY_SCHEMA_VERSION,
    V2_SUB_BUCKETS,
    NotFoundError,
    bytes_to_uint64,
    uint64_to_bytes,
)


class MigrationMixin:
    """Schema migration for a store that holds a BucketDB as ``db``."""

    db: BucketDB

    def migrate(self) -> None:
        """Run any pending schema migrations."""
        version = 0
        with self.db.view() as tx:
            system = tx.bucket(BUCKET_SYSTEM)
            if system is not None:
                raw = system.get(KEY_SCHEMA_VERSION)
                if raw is not None:
                    version = bytes_to_uint64(raw)

        if version < 2:
            try:
                self._migrate_v1_to_v2()
            except (NotFoundError, ValueError) as err:
                raise RuntimeError(f"migration v1->v2: {err}") from err

    def _migrate_v1_to_v2(self) -> None:
        """Add the KV and Object Store sub-buckets to every stream bucket."""
        with self.db.update() as tx:
            streams = tx.bucket(BUCKET_STREAMS)
            if streams is not None:
                for name in streams.bucket_names():
                    stream_bucket = streams.bucket(name)
                    for sub in V2_SUB_BUCKETS:
                        stream_bucket.create_bucket_if_not_exists(sub)

            system = tx.bucket(BUCKET_SYSTEM)
            if system is None:
                raise NotFoundError("system bucket not found")
            system.put(KEY_SCHEMA_VERSION, uint64_to_bytes(2))