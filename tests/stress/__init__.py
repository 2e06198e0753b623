"""
Fan-out Stress Test Suite

Full worker populations run against each broker backend:
- ST-001: Null body detection across the 12-scenario matrix (in-memory broker)
- ST-002: Fan-out integrity over Redis Streams consumer groups

Run with: pytest tests/stress/ -v --tb=short
Tune with STRESS_RUN_SECONDS, STRESS_LONG_RUN_SECONDS and STRESS_CONSUMERS.
"""
