"""Disclose metadata of container images and OCI artifacts in remote registries"""

__version__ = "0.1.0"
