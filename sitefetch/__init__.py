"""
Resilient content fetching: relay racing, bounded concurrency, backoff and
two-tier caching.
"""
