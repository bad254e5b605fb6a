"""
Infrastructure helpers: correlation ids, database engine, event publishing.
"""
