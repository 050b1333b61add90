"""Remote job runner: polls a control plane and executes job code in sandboxes."""

__version__ = "0.1.0"
