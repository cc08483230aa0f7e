"""
Cache Domain Module

Entities, value objects, exceptions and the backing store interface for
cache and rate-limit management.
"""
