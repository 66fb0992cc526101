from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class SharedResourcesConfig:
    resource_group_name: str
    key_vault_name: str
    use_existing: bool  # reference instead of create; never destroyed by this stack
    sku: str


@dataclass(frozen=True)
class UnsealKeyConfig:
    name: str
    key_type: str  # RSA or RSA-HSM
    key_size: int
    key_opts: List[str]


@dataclass(frozen=True)
class ServicePrincipalConfig:
    display_name: str
    role_definition_name: str
    password_display_name: str


@dataclass(frozen=True)
class KmsInfrastructureConfig:
    deployment_domain: str
    environment: str
    cloud_provider: str
    location: str
    shared: SharedResourcesConfig
    unseal_key: UnsealKeyConfig
    service_principal: ServicePrincipalConfig
