"""
Meter Collector Services

1. Config Service - Meter/register configuration cache
2. Device Service - BACnet property reads, adaptive batching
3. Collection Service - Cycles, persistence, status, HTTP endpoints
"""
