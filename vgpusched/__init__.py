"""Scheduler extender, admission webhook and annotation codecs for sharing accelerator devices between Kubernetes pods."""

__version__ = "0.1.0"