"""Main entry point for the cert-manager CSI operator."""

from cert_manager_csi_operator.cli import cli

if __name__ == "__main__":
    cli()
