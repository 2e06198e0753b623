"""
Stress Test Scenarios

Each scenario targets a specific failure mode:
- st001: Null or empty bodies delivered to fan-out consumers
- st002: Same checks with Redis Streams as the broker
"""
