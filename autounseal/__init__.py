"""Provision an Azure Key Vault KMS and verify HashiCorp Vault auto-unseal."""

__version__ = "0.1.0"
