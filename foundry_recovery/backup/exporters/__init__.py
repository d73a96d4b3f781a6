"""Component exporters for backup/restore operations."""

from .base import CaptureStrategy, StoreExporter
from .postgres_exporter import PostgresExporter
from .neo4j_exporter import Neo4jExporter
from .redis_exporter import RedisExporter
from .volume_exporter import VolumeExporter
from .resource_exporter import ResourceExporter

__all__ = [
    "CaptureStrategy",
    "StoreExporter",
    "PostgresExporter",
    "Neo4jExporter",
    "RedisExporter",
    "VolumeExporter",
    "ResourceExporter",
]
