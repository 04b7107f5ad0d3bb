"""
Core utilities shared by the resolver, yield engine, ledger and payments.

Provides the domain error taxonomy, the try-next-on-failure combinator used
at every fallback site, TTL cache entries, and relative time labels.
"""
