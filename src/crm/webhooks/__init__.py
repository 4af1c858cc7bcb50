"""Webhook automation -- outbound deal event delivery and inbound lead ingestion.

Provides the outbound dispatcher (signing, retry with backoff, failure
streaks and auto-disable), the inbound ingestor (token/IP/HMAC checks,
field mapping, dedup, deal creation), the delivery log store, the Redis
retry queue and the offline conversion service.
"""
