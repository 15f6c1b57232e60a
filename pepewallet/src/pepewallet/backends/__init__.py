"""
Indexer backend implementations.

Available backends:
- MyPepeBackend: the MyPepe indexing service over HTTPS
"""

from pepewallet.backends.base import AddressTransactionsPage, IndexerBackend
from pepewallet.backends.mypepe import IndexerError, MyPepeBackend

__all__ = [
    "AddressTransactionsPage",
    "IndexerBackend",
    "IndexerError",
    "MyPepeBackend",
]
