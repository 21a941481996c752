"""
Adapters

Connections to external collaborators: the Polygon stream and REST APIs,
and NATS for publishing candles.
"""

from dataflow.adapters.nats_client import NatsClient, NatsConfig, Topics
from dataflow.adapters.polygon_rest import (
    HistoricalDataError,
    PolygonRestClient,
    PolygonRestConfig,
)
from dataflow.adapters.polygon_stream import (
    ConnectionState,
    PolygonStreamClient,
    StreamConfig,
)

__all__ = [
    "ConnectionState",
    "HistoricalDataError",
    "NatsClient",
    "NatsConfig",
    "PolygonRestClient",
    "PolygonRestConfig",
    "PolygonStreamClient",
    "StreamConfig",
    "Topics",
]
