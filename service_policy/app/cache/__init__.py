"""
Policy cache package.

Holds the versioned, TTL-bounded cache shared by the region, rate-limit
and access-control resolvers.
"""
