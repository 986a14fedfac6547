"""
talos-pxe - Network Boot Orchestrator

Provides DHCP, PXE, TFTP, HTTP and DNS services for bare metal
provisioning of Talos nodes. Decides between authoritative and proxy
DHCP at startup and registers elected control-plane nodes in DNS.
"""

__version__ = "1.0.0"
