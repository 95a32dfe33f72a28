"""
Directory Sync - Keep a target directory's groups, users and memberships converged with a source group registry.

This package provides an incremental change-event consumer and a full reconciliation
engine that provision groups and memberships from a hierarchical group registry
into a directory service through its REST API.
"""

__version__ = "1.0.0"
__author__ = "Directory Sync Team"
