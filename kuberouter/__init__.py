"""Kubernetes network policy model and iptables/ipset rule rendering."""

__version__ = "0.1.0"