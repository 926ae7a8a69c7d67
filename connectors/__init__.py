"""
connectors — provider linking & token lifecycle.

Handles:
  • The closed registry of storage providers (Google Drive, OneDrive)
  • Per-user link records with tombstoned revocation
  • Lazy token refresh at the point of use
  • Fernet encryption of tokens at rest
  • Connection status and aggregated file listings across providers

Each provider is a subclass of BaseConnector.
"""
