"""
Core matching logic: geometry index, blocking, string scoring and the
matching engine.
"""
