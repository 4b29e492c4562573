"""Rate limiting adapters.

This package hides the shared counter store behind a small abstraction so the
HTTP layer never talks to Redis directly. All counting state lives in the
store; replicas keep nothing in process.
"""
