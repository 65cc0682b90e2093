"""
Registry credential providers.

Each provider returns a (username, password) pair for HTTP basic auth
against the registry, or for the bearer token exchange the registry
challenges with.
"""

import base64
import json
import logging
import os
from typing import Optional, Tuple

import requests

logger = logging.getLogger(__name__)

ACR_REFRESH_TOKEN_USERNAME = "00000000-0000-0000-0000-000000000000"
AZURE_MANAGEMENT_SCOPE = "https://management.azure.com/.default"


class CredentialsNotFoundError(Exception):
    """The configured provider produced no usable credentials"""


def _host(registry: str) -> str:
    """host[:port] of a registry URL or bare host"""
    return registry.split("://", 1)[-1].split("/", 1)[0]


def ecr_region(registry_host: str) -> str:
    """Region of an ECR host (account.dkr.ecr.region.amazonaws.com)"""
    parts = registry_host.split(":")[0].split(".")
    if len(parts) >= 4 and parts[-2] == "amazonaws" and parts[-1] == "com":
        return parts[-3]
    return os.environ.get("AWS_DEFAULT_REGION", "us-east-1")


def get_ecr_credentials(registry_url: str) -> Tuple[str, str]:
    """Get ECR credentials using boto3.

    The authorization token decodes to "AWS:<password>".
    """
    import boto3

    region = ecr_region(_host(registry_url))
    logger.info(f"Authenticating with ECR in region: {region}")

    ecr = boto3.client("ecr", region_name=region)
    response = ecr.get_authorization_token()
    token_b64 = response["authorizationData"][0]["authorizationToken"]
    token = base64.b64decode(token_b64).decode("utf-8")
    username, password = token.split(":", 1)
    logger.info("ECR authentication successful")
    return username, password


def get_acr_credentials(registry_url: str, timeout: float = 30.0) -> Tuple[str, str]:
    """Get Azure Container Registry credentials using managed identity.

    Uses Azure Identity SDK to get an access token and exchanges it for
    an ACR refresh token via the OAuth2 exchange endpoint.

    Environment Variables:
        AZURE_CLIENT_ID: Client ID of the managed identity (required when
                        multiple user-assigned identities exist on the cluster)
    """
    registry_host = _host(registry_url)
    logger.info(f"Authenticating with ACR: {registry_host}")

    client_id = os.environ.get("AZURE_CLIENT_ID")
    if client_id:
        from azure.identity import ManagedIdentityCredential

        logger.info(f"Using managed identity with client ID: {client_id}")
        credential = ManagedIdentityCredential(client_id=client_id)
    else:
        from azure.identity import DefaultAzureCredential

        logger.info("Using DefaultAzureCredential (no AZURE_CLIENT_ID specified)")
        credential = DefaultAzureCredential()

    access_token = credential.get_token(AZURE_MANAGEMENT_SCOPE).token

    response = requests.post(
        f"https://{registry_host}/oauth2/exchange",
        data={"grant_type": "access_token", "service": registry_host, "access_token": access_token},
        timeout=timeout,
    )
    if response.status_code != 200:
        logger.error(f"ACR token exchange failed with HTTP {response.status_code}")
        logger.error(f"  AZURE_CLIENT_ID: {client_id or 'not set'}")
        logger.error("  Verify the managed identity has the AcrPull and AcrDelete roles on the registry")
        response.raise_for_status()

    refresh_token = response.json()["refresh_token"]
    logger.info("ACR authentication successful")
    return ACR_REFRESH_TOKEN_USERNAME, refresh_token


def _core_v1(kubeconfig: Optional[str], context: Optional[str]):
    from kubernetes import client, config

    if os.environ.get("KUBERNETES_SERVICE_HOST"):
        config.load_incluster_config()
        return client.CoreV1Api()
    return client.CoreV1Api(api_client=config.new_client_from_config(config_file=kubeconfig, context=context))


def parse_dockerconfigjson(dockerconfig: dict, registry_url: str) -> Tuple[Optional[str], Optional[str]]:
    """Find the credentials for a registry in a decoded .dockerconfigjson"""
    registry_host = _host(registry_url)
    for auth_url, auth_data in (dockerconfig.get("auths") or {}).items():
        if _host(auth_url) != registry_host:
            continue

        username = auth_data.get("username")
        password = auth_data.get("password")

        # Fall back to the base64 "username:password" auth field
        if (not username or not password) and "auth" in auth_data:
            auth_decoded = base64.b64decode(auth_data["auth"]).decode("utf-8")
            if ":" in auth_decoded:
                decoded_user, decoded_pass = auth_decoded.split(":", 1)
                username = username or decoded_user
                password = password or decoded_pass

        if username or password:
            return username, password

    return None, None


def get_credentials_from_k8s_secret(
    secret_name: str,
    namespace: str,
    registry_url: str,
    kubeconfig: Optional[str] = None,
    context: Optional[str] = None,
) -> Tuple[str, str]:
    """Get Docker registry username and password from a Kubernetes secret.

    Reads a secret containing .dockerconfigjson with registry credentials.

    Args:
        secret_name: Name of the secret to read
        namespace: Kubernetes namespace containing the secret
        registry_url: Registry URL to match in the dockerconfigjson
        kubeconfig: kubeconfig path used outside a cluster
        context: kubeconfig context used outside a cluster

    Raises:
        CredentialsNotFoundError: the secret has no entry for the registry
        ApiException: the secret cannot be read
    """
    core_v1 = _core_v1(kubeconfig, context)

    logger.debug(f"Attempting to read {secret_name} secret from namespace {namespace}")
    secret = core_v1.read_namespaced_secret(name=secret_name, namespace=namespace)

    if not secret.data or ".dockerconfigjson" not in secret.data:
        raise CredentialsNotFoundError(f"Secret {namespace}/{secret_name} does not contain .dockerconfigjson")

    dockerconfig = json.loads(base64.b64decode(secret.data[".dockerconfigjson"]).decode("utf-8"))
    username, password = parse_dockerconfigjson(dockerconfig, registry_url)
    if not (username or password):
        raise CredentialsNotFoundError(f"No credentials for {_host(registry_url)} in secret {namespace}/{secret_name}")

    logger.info(f"Found registry credentials in {secret_name} secret")
    return username or "", password or ""
