"""Batch cordon, drain and uncordon of Kubernetes nodes"""

__version__ = "0.1.0"
