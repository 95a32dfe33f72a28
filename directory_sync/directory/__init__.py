"""
Target directory adapters for Directory Sync.
"""
