"""Villy shared libraries.

This package contains reusable components:
- common: Settings
- caching: Bounded TTL cache
- monitoring: Pipeline performance monitor
"""
