"""
Records and persistence: data models, block artifacts and the result store.
"""
