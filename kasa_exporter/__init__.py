"""Prometheus exporter for TP-Link Kasa smart plugs on the local network."""

__version__ = "0.4.0"
