"""Index store client, bulk indexer and index bootstrap."""

from marketindexer.indexer.bootstrap import IndexBootstrapError, ensure_index, load_template
from marketindexer.indexer.bulk import (
    BulkIndexer,
    BulkIndexerConfig,
    BulkIndexerStats,
    log_flush_result,
)
from marketindexer.indexer.client import (
    BulkItemResult,
    BulkResponse,
    IndexStoreClient,
    IndexStoreConfig,
    IndexStoreConnectionError,
    IndexStoreError,
)

__all__ = [
    "BulkIndexer",
    "BulkIndexerConfig",
    "BulkIndexerStats",
    "BulkItemResult",
    "BulkResponse",
    "IndexBootstrapError",
    "IndexStoreClient",
    "IndexStoreConfig",
    "IndexStoreConnectionError",
    "IndexStoreError",
    "ensure_index",
    "load_template",
    "log_flush_result",
]
