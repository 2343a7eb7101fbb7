"""Configuration module for the vault client."""
from .settings import ClientConfig, CliCredentials, build_base_uri, load_cli_credentials, load_config

__all__ = ["ClientConfig", "CliCredentials", "build_base_uri", "load_cli_credentials", "load_config"]
