"""
Data ingestion and storage components.

Provides the GDAX feed subscriber, the rate-limited snapshot poller,
batch buffers for amortized writes and the PostgreSQL storage sink.
"""
