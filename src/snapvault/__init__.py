"""
SnapVault: snapshot storage and versioning for character mod state.

Sub-packages:
- snapvault.core: exceptions, logging, notifications, background tasks
- snapvault.config: YAML configuration
- snapvault.snapshot: blob store, file map chain, snapshot state, migration, capture
- snapvault.exchange: MCDF import and mod pack export
"""

__version__ = "0.1.0"
