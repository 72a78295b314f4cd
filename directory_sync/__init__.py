"""
Directory Sync - Reconcile Google Workspace group memberships with a declared configuration.

This package drives an eventually consistent remote directory to a desired set
of group memberships, retrying transient failures with exponential backoff.
"""

__version__ = "1.0.0"
__author__ = "Directory Sync Team"
