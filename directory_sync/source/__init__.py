"""
Source registry adapters for Directory Sync.
"""
