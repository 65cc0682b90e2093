"""
Registry authentication.

resolve_credentials picks the provider named by registry.credentials:
- static: username/password from configuration (empty means anonymous)
- ecr: AWS ECR authorization token via boto3
- acr: Azure Container Registry refresh token via azure-identity
- k8s_secret: a .dockerconfigjson secret in the cluster
"""

import logging
from typing import Tuple

from regclean.auth.providers import (
    CredentialsNotFoundError,
    get_acr_credentials,
    get_credentials_from_k8s_secret,
    get_ecr_credentials,
)
from regclean.error_utils import create_registry_auth_error

logger = logging.getLogger(__name__)


def resolve_credentials(config_manager) -> Tuple[str, str]:
    """Return (username, password) for the configured registry

    Raises:
        ActionableError: the provider failed to produce credentials
    """
    provider = config_manager.get_credentials_provider()
    registry_url = config_manager.get_registry_url()
    logger.debug(f"Resolving registry credentials with provider {provider}")

    if provider == "static":
        return config_manager.get_registry_username(), config_manager.get_registry_password()

    try:
        if provider == "ecr":
            return get_ecr_credentials(registry_url)
        if provider == "acr":
            return get_acr_credentials(registry_url, timeout=config_manager.get_registry_timeout())
        if provider == "k8s_secret":
            contexts = config_manager.get_contexts()
            return get_credentials_from_k8s_secret(
                config_manager.get_auth_secret(),
                config_manager.get_auth_secret_namespace(),
                registry_url,
                kubeconfig=config_manager.get_kubeconfig() or None,
                context=contexts[0] if contexts else None,
            )
    except Exception as e:
        raise create_registry_auth_error(registry_url, e)

    raise create_registry_auth_error(registry_url, CredentialsNotFoundError(f"Unknown credentials provider: {provider}"))


__all__ = [
    "CredentialsNotFoundError",
    "get_acr_credentials",
    "get_credentials_from_k8s_secret",
    "get_ecr_credentials",
    "resolve_credentials",
]
