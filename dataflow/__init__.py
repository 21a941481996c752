"""
Dataflow Layer

Event I/O layer for the live chart feed. Contains:
- adapters: Polygon stream/REST clients and the NATS client
- candle_aggregation: Aggregate/trade to candle folding
- config: YAML feed configuration
- ingestion: Polygon to NATS candle bridge
- query: Historical data and calculator API
"""
