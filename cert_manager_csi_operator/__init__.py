"""cert-manager CSI operator - injects cert-manager CSI volumes into managed workloads."""

__version__ = "0.1.0"
