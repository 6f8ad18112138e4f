"""market-indexer: streams Coinbase order-book and ticker data into a search index."""

__version__ = "0.1.0"
