"""
Command-line interface for tagsync.
"""
