"""
Core shipping pipeline components.

This package contains the delivery pipeline:
- Batching queue between logging call sites and the consumer
- Flush scheduler with size and interval triggers
- HTTP transport to the DataDog intake
- Backoff, failure reporting and metrics
"""
