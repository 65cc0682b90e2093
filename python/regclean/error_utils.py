"""
Error message utilities for providing actionable guidance to users.

Fatal conditions (registry authentication, cluster access, configuration)
are raised as ActionableError so the CLI can print what went wrong together
with the most likely fixes before exiting.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    PERMISSION = "permission"
    RESOURCE = "resource"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ActionableError(Exception):
    """Exception with actionable guidance for users"""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        """Initialize actionable error

        Args:
            message: Primary error message
            category: Error category for classification
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [self.message]

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("\nAdditional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


def create_registry_connection_error(registry_url: str, error: Exception) -> ActionableError:
    """Create actionable error for registry connection failures"""
    error_str = str(error).lower()

    suggestions = [
        f"Verify the registry URL is correct: {registry_url}",
        "Check network connectivity to the registry",
        "Verify firewall rules allow access to the registry",
        "Check if the registry service is running",
    ]

    if "timeout" in error_str or "timed out" in error_str:
        suggestions.insert(1, "Check if the registry is experiencing high load")
        suggestions.insert(2, "Increase registry.timeout in config.yaml")

    if "name resolution" in error_str or "dns" in error_str or "name or service not known" in error_str:
        suggestions.insert(1, "Verify DNS resolution for the registry hostname")

    if "ssl" in error_str or "certificate" in error_str:
        suggestions.insert(1, "Set registry.verify_tls: false for registries with self-signed certificates")

    return ActionableError(
        message=f"Failed to connect to Docker registry at {registry_url}",
        category=ErrorCategory.CONNECTION,
        suggestions=suggestions,
        details={
            "registry_url": registry_url,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_registry_auth_error(registry_url: str, error: Exception) -> ActionableError:
    """Create actionable error for registry authentication failures"""
    suggestions = [
        "Verify REGCLEAN_REGISTRY_USERNAME and REGCLEAN_REGISTRY_PASSWORD are set correctly",
        "Check config.yaml for registry.username / registry.password",
        "Verify the password hasn't expired or been rotated",
    ]

    if "amazonaws.com" in registry_url:
        suggestions.insert(0, "Use --aws (registry.credentials: ecr) to authenticate with an ECR token")
        suggestions.insert(1, "Verify AWS credentials are configured (aws configure)")
        suggestions.insert(2, "Check AWS IAM permissions for ecr:GetAuthorizationToken")

    if "azurecr.io" in registry_url:
        suggestions.insert(0, "Use registry.credentials: acr to authenticate with a managed identity")
        suggestions.insert(1, "Verify the identity has the AcrDelete role on the registry")

    return ActionableError(
        message=f"Failed to authenticate with Docker registry at {registry_url}",
        category=ErrorCategory.AUTHENTICATION,
        suggestions=suggestions,
        details={
            "registry_url": registry_url,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_kubernetes_error(operation: str, error: Exception) -> ActionableError:
    """Create actionable error for Kubernetes API failures"""
    error_str = str(error).lower()

    suggestions = [
        "Verify Kubernetes cluster access (kubectl cluster-info)",
        "Check that the context exists in the kubeconfig (kubectl config get-contexts)",
        "Verify RBAC permissions to list pods, replicasets and controllerrevisions in all namespaces",
    ]

    forbidden = "403" in error_str or "forbidden" in error_str
    if forbidden:
        suggestions.insert(0, "Check Kubernetes RBAC permissions")
        suggestions.insert(1, "Verify the user or service account has cluster-wide list permissions")

    if "context" in error_str and "not found" in error_str:
        suggestions.insert(0, "Check the --contexts value for typos")

    return ActionableError(
        message=f"Kubernetes operation failed: {operation}",
        category=ErrorCategory.PERMISSION if forbidden else ErrorCategory.RESOURCE,
        suggestions=suggestions,
        details={
            "operation": operation,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_config_error(field: str, value: Any, reason: str) -> ActionableError:
    """Create actionable error for configuration validation failures"""
    suggestions = [
        f"Check the '{field}' value in config.yaml",
        "Verify the value matches the expected format",
        "Check for an environment variable overriding the value",
    ]

    if "url" in field.lower():
        suggestions.insert(1, "URL should be in format: https://hostname[:port]")
    elif "timeout" in field.lower() or "interval" in field.lower():
        suggestions.insert(1, "Time values must be positive numbers")

    return ActionableError(
        message=f"Configuration error: Invalid value for '{field}'",
        category=ErrorCategory.CONFIGURATION,
        suggestions=suggestions,
        details={
            "field": field,
            "value": value,
            "reason": reason
        }
    )
