"""kubenode - idempotent, resumable provisioning of a host into a Kubernetes node."""

__version__ = "0.1.0"
