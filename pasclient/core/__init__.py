"""Core components of the vault client."""
