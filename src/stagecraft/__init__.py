"""
Stagecraft - staged provisioning of cloud-hosted application infrastructure.
"""

__version__ = "0.3.0"
