"""Ingestion of per-network on-chain records and off-chain builder metadata."""

from subnet_staking_engine.ingestor.indexer_client import IndexerClient, IndexerClientError, RetryError
from subnet_staking_engine.ingestor.metadata_store import MetadataStoreAdapter, MetadataStoreError
from subnet_staking_engine.ingestor.models import (
    AdapterResult,
    OffChainMetadataRecord,
    OnChainSubnetRecord,
    SchemaVersion,
    SubnetMetadata,
)
from subnet_staking_engine.ingestor.source_adapter import IndexerDialect, SubnetSourceAdapter

__all__ = [
    "AdapterResult",
    "IndexerClient",
    "IndexerClientError",
    "IndexerDialect",
    "MetadataStoreAdapter",
    "MetadataStoreError",
    "OffChainMetadataRecord",
    "OnChainSubnetRecord",
    "RetryError",
    "SchemaVersion",
    "SubnetMetadata",
    "SubnetSourceAdapter",
]
