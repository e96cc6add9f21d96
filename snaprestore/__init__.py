"""snaprestore - browse object-store snapshots and restore them into datastores."""

__version__ = '0.1.0'
