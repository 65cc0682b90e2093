"""Kubernetes-aware cleanup of unused container registry images"""

__version__ = "0.1.0"
