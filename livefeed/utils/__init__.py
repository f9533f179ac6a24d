"""
Shared helpers: category-aware logging, backoff, in-process pub/sub
"""
