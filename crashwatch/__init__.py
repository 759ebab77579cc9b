"""crashwatch: crash-loop incident detection and escalation for Kubernetes."""

__version__ = "0.1.0"
