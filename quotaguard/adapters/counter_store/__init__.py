"""Counter store adapters.

The decision engine depends only on ``AbstractCounterStore``. Production runs
use the Redis adapter so every process shares one set of counters; the
in-memory adapter keeps the same semantics for a single process (development
and tests).
"""
