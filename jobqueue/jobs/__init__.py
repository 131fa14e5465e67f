"""
Durable job queue.

This package provides the database-backed queue:
- Job rows as the single source of truth, claimed with conditional updates
- Registry-based pluggable handlers
- Bounded retries with exponential backoff
- Liveness sweep for jobs abandoned by crashed workers
"""
